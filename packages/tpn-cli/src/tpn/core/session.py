"""
Session Lifecycle Controller - connect, disconnect and status for a TPN tunnel.

There are two observable states, Connected and Disconnected. Connecting and
disconnecting only exist inside a single invocation; a crash in the middle of
a connect is detected afterwards through the pending marker kept by the
LeaseStore.

Files involved (all singletons in settings.tmp_dir):
- {interface_name}.conf: the Session Configuration handed to wg-quick
- tpn_lease_end_timestamp / tpn_lease_end_readable: the Lease Record
- tpn_connect.pending: write-ahead marker for an in-flight connect
- tpn.lock: owner of the current connect/disconnect transition

Disconnect leaves the Lease Record in place. Status never trusts it on its own:
the connection state comes from the live interface list only.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..config import Settings
from .driver import WireGuardDriver
from .endpoints import EndpointClient
from .errors import LeaseNotFound, NothingToDisconnect, RemoteRejected, TpnError
from .lease import LeaseRecord, LeaseStore
from .lock import SessionLock, is_process_running
from .platform import Platform
from .privileges import PrivilegeGrant
from .remote import RemoteError, decode_config_response

logger = logging.getLogger(__name__)


# ============================================================================
# Request / result models
# ============================================================================


class ConnectRequest(BaseModel):
    """Parameters of a single connect invocation."""

    country_code: str = Field(..., min_length=1)
    lease_minutes: int = Field(default=10, gt=0)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    skip_confirmation: bool = False
    dry_run: bool = False
    verbose: bool = False

    @field_validator("country_code", mode="before")
    @classmethod
    def _strip_country(cls, value):
        return value.strip() if isinstance(value, str) else value


class DisconnectRequest(BaseModel):
    dry_run: bool = False
    verbose: bool = False


class SessionState(str, Enum):
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"


@dataclass
class ConnectResult:
    country_code: str
    lease_minutes: int
    ip_before: Optional[str] = None
    ip_after: Optional[str] = None
    lease: Optional[LeaseRecord] = None
    dry_run: bool = False
    aborted: bool = False
    cleaned_stale_session: bool = False
    planned_actions: List[str] = field(default_factory=list)


@dataclass
class DisconnectResult:
    ip_before: Optional[str] = None
    ip_after: Optional[str] = None
    dry_run: bool = False
    deactivated: bool = False
    planned_actions: List[str] = field(default_factory=list)


@dataclass
class StatusReport:
    state: SessionState
    public_ip: Optional[str] = None
    interfaces: List[str] = field(default_factory=list)
    lease: Optional[LeaseRecord] = None
    remaining_minutes: Optional[int] = None
    interrupted_connect: Optional[Dict[str, Any]] = None

    @property
    def connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "public_ip": self.public_ip,
            "interfaces": self.interfaces,
            "lease_end": self.lease.expiry_readable if self.lease else None,
            "lease_end_timestamp": self.lease.expiry_epoch if self.lease else None,
            "remaining_minutes": self.remaining_minutes,
            "interrupted_connect": self.interrupted_connect,
        }


# ============================================================================
# Controller
# ============================================================================


class SessionController:
    """
    Sequences the tunnel lifecycle over its collaborators.

    Usage:
        controller = SessionController(settings, client, driver, store, platform)
        result = controller.connect(ConnectRequest(country_code="US"))
    """

    def __init__(
        self,
        settings: Settings,
        client: EndpointClient,
        driver: WireGuardDriver,
        store: LeaseStore,
        platform: Platform,
        privileges: Optional[PrivilegeGrant] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        notify: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            settings: Paths and defaults
            client: Endpoint failover client
            driver: WireGuard adapter
            store: Lease record and pending marker persistence
            platform: Date arithmetic for the readable lease end
            privileges: Sudoers grant; None skips the prerequisite check
            confirm: Asks the user a yes/no question; None answers yes
            notify: Receives progress messages meant for the user
            clock: Current epoch seconds
        """
        self.settings = settings
        self.client = client
        self.driver = driver
        self.store = store
        self.platform = platform
        self.privileges = privileges
        self._confirm = confirm or (lambda message: True)
        self._notify = notify or (lambda message: logger.info(message))
        self._clock = clock

    @property
    def config_path(self):
        return self.settings.config_path

    def _interrupted_connect(self) -> Optional[Dict[str, Any]]:
        """Pending marker left by a process that is gone, if any."""
        marker = self.store.pending()
        if marker is None:
            return None
        pid = marker.get("pid")
        if isinstance(pid, int) and pid != os.getpid() and is_process_running(pid):
            return None
        return marker

    def _remove_config(self) -> None:
        try:
            self.config_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {self.config_path}: {e}")

    def _cleanup_stale_session(self, request: ConnectRequest, result: ConnectResult) -> None:
        if not self.config_path.exists():
            return
        self._notify("Cleaning up old connection...")
        result.cleaned_stale_session = True
        if request.dry_run:
            result.planned_actions.append(f"wg-quick down {self.config_path}")
            result.planned_actions.append(f"rm -f {self.config_path}")
            return
        self.driver.deactivate(self.config_path, verbose=request.verbose)
        self._remove_config()

    def _write_config(self, body: str) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.config_path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(body)

    def _compute_lease(self, lease_minutes: int):
        now = self._clock()
        expiry_epoch = int(now) + lease_minutes * 60
        expiry = self.platform.add_minutes(datetime.fromtimestamp(now), lease_minutes)
        return expiry_epoch, self.platform.format_readable(expiry)

    def connect(self, request: ConnectRequest) -> ConnectResult:
        """
        Fetch a fresh config and bring the tunnel up.

        Raises:
            AllEndpointsFailed: No endpoint answered
            RemoteRejected: The endpoint returned an error payload
            DriverActivationFailed: wg-quick up failed (config kept on disk)
            SessionLocked: Another invocation is changing the connection
        """
        result = ConnectResult(
            country_code=request.country_code,
            lease_minutes=request.lease_minutes,
            dry_run=request.dry_run,
        )

        if self.privileges is not None and not self.privileges.is_installed():
            if not self._confirm("No sudoers entry for wg-quick. Add entry?"):
                result.aborted = True
                return result
            self.privileges.install()

        if not request.skip_confirmation and not self._confirm(
            f"Connecting to {request.country_code} for {request.lease_minutes} minutes"
        ):
            result.aborted = True
            return result

        with SessionLock(self.settings.lock_path):
            interrupted = self._interrupted_connect()
            if interrupted is not None:
                logger.warning(f"Previous connect did not finish: {interrupted}")
                self._notify("Previous connect was interrupted, recovering...")

            self._cleanup_stale_session(request, result)

            result.ip_before = self.client.lookup_public_ip()
            self._notify("Connecting you to a TPN node...")

            if not request.dry_run:
                self.store.mark_pending(request.country_code, request.lease_minutes)

            try:
                self._connect_locked(request, result)
            except TpnError:
                if not request.dry_run:
                    self.store.clear_pending()
                raise

        return result

    def _connect_locked(self, request: ConnectRequest, result: ConnectResult) -> None:
        body = self.client.request_config(
            request.country_code,
            request.lease_minutes,
            timeout=request.timeout_seconds,
        )
        self._write_config(body)

        decoded = decode_config_response(body)
        if isinstance(decoded, RemoteError):
            self._remove_config()
            raise RemoteRejected(decoded.message)

        logger.debug(f"Config file: {self.config_path}")
        if request.verbose:
            self._notify(f"Config file: {self.config_path}\n{body.rstrip()}")

        if request.dry_run:
            result.planned_actions.append(f"wg-quick up {self.config_path}")
        else:
            self.driver.activate(self.config_path, verbose=request.verbose)

        result.ip_after = self.client.lookup_public_ip()

        if request.dry_run:
            return

        expiry_epoch, expiry_readable = self._compute_lease(request.lease_minutes)
        result.lease = self.store.save(expiry_epoch, expiry_readable)
        self.store.clear_pending()

    def disconnect(self, request: DisconnectRequest) -> DisconnectResult:
        """
        Bring the tunnel down and remove the session config.

        The lease files are left alone.

        Raises:
            NothingToDisconnect: No session config exists
            SessionLocked: Another invocation is changing the connection
        """
        if not self.config_path.exists():
            raise NothingToDisconnect(self.config_path)

        result = DisconnectResult(dry_run=request.dry_run)

        with SessionLock(self.settings.lock_path):
            self._notify("Disconnecting TPN...")
            result.ip_before = self.client.lookup_public_ip()

            if request.dry_run:
                result.planned_actions.append(f"wg-quick down {self.config_path}")
            else:
                result.deactivated = self.driver.deactivate(
                    self.config_path, verbose=request.verbose
                )
                self._remove_config()

            result.ip_after = self.client.lookup_public_ip()

        return result

    def status(self) -> StatusReport:
        """Reconcile live WireGuard interfaces with the persisted lease."""
        interfaces = self.driver.list_active_interfaces()
        report = StatusReport(
            state=SessionState.CONNECTED if interfaces else SessionState.DISCONNECTED,
            interfaces=interfaces,
            public_ip=self.client.lookup_public_ip(),
            interrupted_connect=self._interrupted_connect(),
        )

        if report.connected:
            try:
                report.lease = self.store.load()
            except LeaseNotFound:
                logger.debug("Connected without a lease record")
            else:
                report.remaining_minutes = report.lease.remaining_minutes(self._clock())

        return report
