"""Error taxonomy for the TPN session lifecycle.

Every error the CLI reports to the user derives from TpnError. Commands catch
TpnError at the top level, print the message with an error marker and exit 1.
"""

from typing import List, Optional


class TpnError(Exception):
    """Base exception for TPN errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AllEndpointsFailed(TpnError):
    """Raised when every configured endpoint failed at the transport level."""

    def __init__(self, path: str, errors: Optional[List[str]] = None):
        self.path = path
        self.errors = errors or []
        super().__init__(f"all endpoints failed for {path}")


class RemoteRejected(TpnError):
    """Raised when an endpoint answered with an error payload instead of a config."""

    def __init__(self, message: str):
        super().__init__(message)


class NothingToDisconnect(TpnError):
    def __init__(self, config_path=None):
        self.config_path = config_path
        super().__init__("no config to disconnect")


class DriverActivationFailed(TpnError):
    """Raised when wg-quick up fails. The config file is kept for inspection."""

    def __init__(self, config_path, returncode: Optional[int] = None, stderr: str = ""):
        self.config_path = config_path
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {returncode}"
        super().__init__(f"failed to bring up {config_path}: {detail}")


class DriverDeactivationFailed(TpnError):
    """wg-quick down failed. Only ever logged by the adapter, never propagated."""

    def __init__(self, config_path, returncode: Optional[int] = None):
        self.config_path = config_path
        self.returncode = returncode
        super().__init__(f"failed to bring down {config_path} (exit code {returncode})")


class DriverToolsMissing(TpnError):
    def __init__(self, missing: List[str], hint: str):
        self.missing = missing
        self.hint = hint
        super().__init__(f"{', '.join(missing)} not found. {hint}")


class SessionLocked(TpnError):
    """Raised when another invocation holds the session lock."""

    def __init__(self, pid: int, lock_path=None):
        self.pid = pid
        self.lock_path = lock_path
        super().__init__(f"another tpn process (pid {pid}) is changing the connection")


class LeaseNotFound(TpnError):
    def __init__(self):
        super().__init__("no lease end time found")


class PrivilegeGrantFailed(TpnError):
    pass


class UnsupportedPlatform(TpnError):
    def __init__(self, platform_name: str):
        self.platform_name = platform_name
        super().__init__(f"unsupported OS: {platform_name}")
