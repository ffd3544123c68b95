"""Sudoers entry letting the current user run wg-quick on the TPN config."""

import getpass
import logging
import shutil
import subprocess

from ..config import Settings
from .errors import PrivilegeGrantFailed

logger = logging.getLogger(__name__)


class PrivilegeGrant:
    def __init__(self, settings: Settings, wg_quick: str = "wg-quick"):
        self.sudoers_file = settings.sudoers_file
        self.config_path = settings.config_path
        self.wg_quick = wg_quick

    def is_installed(self) -> bool:
        return self.sudoers_file.exists()

    def render(self, user: str, wg_quick_path: str) -> str:
        cfg = self.config_path
        return f"{user} ALL=(ALL) NOPASSWD: {wg_quick_path} up {cfg}, {wg_quick_path} down {cfg}\n"

    def install(self) -> str:
        """
        Write the sudoers entry, replacing any previous one.

        Returns:
            The entry that was written

        Raises:
            PrivilegeGrantFailed: If any sudo step fails
        """
        wg_quick_path = shutil.which(self.wg_quick) or self.wg_quick
        entry = self.render(getpass.getuser(), wg_quick_path)
        target = str(self.sudoers_file)

        steps = [
            (["sudo", "rm", "-f", target], None),
            (["sudo", "tee", target], entry),
            (["sudo", "chmod", "440", target], None),
        ]
        for cmd, stdin in steps:
            logger.debug(f"Running: {' '.join(cmd)}")
            try:
                result = subprocess.run(
                    cmd,
                    input=stdin,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    text=True,
                )
            except FileNotFoundError as e:
                raise PrivilegeGrantFailed(f"could not run {cmd[0]}: {e}")
            if result.returncode != 0:
                raise PrivilegeGrantFailed(
                    f"'{' '.join(cmd)}' failed: {(result.stderr or '').strip()}"
                )

        logger.info(f"Added sudoers entry: {target}")
        return entry
