"""WireGuard tunnel driver adapter.

Wraps the external wg-quick and wg executables:
- activate:   sudo wg-quick up <config>
- deactivate: sudo wg-quick down <config>
- list_active_interfaces: wg show interfaces (sudo only for panic)

In verbose mode the driver's own output goes straight to the terminal.
Otherwise stdout is discarded and stderr is only kept to explain failures.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List

from .errors import DriverActivationFailed, DriverDeactivationFailed, DriverToolsMissing

logger = logging.getLogger(__name__)

INSTALL_HINTS = {
    "linux": "Install it with: sudo apt-get install -y wireguard-tools",
    "darwin": "Install it with: brew install wireguard-tools",
}


class WireGuardDriver:
    """Idempotent up/down operations on a wg-quick config file."""

    def __init__(self, wg_quick: str = "wg-quick", wg: str = "wg", use_sudo: bool = True):
        self.wg_quick = wg_quick
        self.wg = wg
        self.use_sudo = use_sudo

    def _resolve(self, name: str) -> str:
        return shutil.which(name) or name

    def _privileged(self, cmd: List[str]) -> List[str]:
        return ["sudo", *cmd] if self.use_sudo else cmd

    def ensure_tools(self) -> None:
        """
        Check that wg-quick and wg are installed.

        Raises:
            DriverToolsMissing: With an install hint for this OS
        """
        missing = [tool for tool in (self.wg_quick, self.wg) if shutil.which(tool) is None]
        if missing:
            key = "darwin" if sys.platform == "darwin" else "linux"
            raise DriverToolsMissing(missing, INSTALL_HINTS[key])

    @staticmethod
    def interface_for(config_path: Path) -> str:
        """wg-quick names the interface after the config file stem."""
        return Path(config_path).stem

    def list_active_interfaces(self, privileged: bool = False) -> List[str]:
        """
        Names of WireGuard interfaces currently up.

        Runs without sudo unless privileged is set.
        A failing or missing wg binary reads as no interfaces.
        """
        cmd = [self._resolve(self.wg), "show", "interfaces"]
        if privileged:
            cmd = self._privileged(cmd)
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError:
            logger.debug(f"{self.wg} not found")
            return []
        if result.returncode != 0:
            logger.debug(f"wg show interfaces failed: {result.stderr.strip()}")
            return []
        return result.stdout.split()

    def is_active(self, config_path: Path) -> bool:
        return self.interface_for(config_path) in self.list_active_interfaces()

    def activate(self, config_path: Path, verbose: bool = False) -> None:
        """
        Bring the tunnel up from a config file.

        Does nothing if the interface is already up.

        Raises:
            DriverActivationFailed: If wg-quick exits non-zero or is missing
        """
        if self.is_active(config_path):
            logger.info(f"Interface {self.interface_for(config_path)} already up")
            return

        cmd = self._privileged([self._resolve(self.wg_quick), "up", str(config_path)])
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            if verbose:
                result = subprocess.run(cmd)
            else:
                result = subprocess.run(
                    cmd,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    text=True,
                )
        except FileNotFoundError as e:
            raise DriverActivationFailed(config_path, None, str(e))

        if result.returncode != 0:
            raise DriverActivationFailed(config_path, result.returncode, result.stderr or "")

    def deactivate(self, config_path: Path, verbose: bool = False) -> bool:
        """
        Bring the tunnel down. Best effort: failures are logged, never raised.

        Returns:
            True if wg-quick reported success
        """
        cmd = self._privileged([self._resolve(self.wg_quick), "down", str(config_path)])
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            if verbose:
                result = subprocess.run(cmd)
            else:
                result = subprocess.run(
                    cmd,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
        except FileNotFoundError as e:
            logger.warning(f"Could not run {self.wg_quick}: {e}")
            return False

        if result.returncode != 0:
            logger.info(str(DriverDeactivationFailed(config_path, result.returncode)))
            return False
        return True

    def deactivate_interface(self, name: str) -> bool:
        """wg-quick down by interface name, used when wiping interfaces."""
        return self.deactivate(Path(name))
