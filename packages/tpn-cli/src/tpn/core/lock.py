"""
Session lock - one connect/disconnect transition per machine at a time.

The lock is a file holding the PID of its owner. A lock whose PID no longer
belongs to a running process is stale and gets taken over.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from .errors import SessionLocked

logger = logging.getLogger(__name__)


def is_process_running(pid: int) -> bool:
    """Check if a process with given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return False
    return True


class SessionLock:
    """
    Advisory PID lock file.

    Usage:
        with SessionLock(settings.lock_path):
            ...  # change tunnel state
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._held = False

    def _read_pid(self) -> Optional[int]:
        """Read PID from file, returns None if not found or invalid."""
        try:
            pid_str = self.path.read_text().strip()
        except (FileNotFoundError, IOError) as e:
            logger.debug(f"Error reading lock file: {e}")
            return None
        try:
            return int(pid_str) if pid_str else None
        except ValueError:
            return None

    def _try_create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return True

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            SessionLocked: If a live process already holds it
        """
        if self._try_create():
            self._held = True
            return

        owner = self._read_pid()
        if owner is not None and owner != os.getpid() and is_process_running(owner):
            raise SessionLocked(owner, self.path)

        logger.info(f"Removing stale lock file (process {owner} not running)")
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

        if not self._try_create():
            # Someone else won the race for the stale lock
            raise SessionLocked(self._read_pid() or -1, self.path)
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if self._read_pid() != os.getpid():
            logger.warning(f"Lock file {self.path} no longer ours, leaving it")
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "SessionLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
