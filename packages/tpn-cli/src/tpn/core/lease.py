"""
Lease State Store - persisted lease expiry for the active tunnel.

The lease lives in two scalar files in the shared scratch directory:
- tpn_lease_end_timestamp: integer epoch seconds
- tpn_lease_end_readable: "%Y-%m-%d %H:%M:%S" local time

Both are written to a temporary sibling and renamed into place, so a reader
never sees a half-written file. Last writer wins; there is one lease per
machine.

The store also owns the connect write-ahead marker (tpn_connect.pending). A
connect writes it before touching the tunnel driver and clears it once the
lease is saved, so a marker left behind by a dead process means the previous
connect was interrupted.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from ..config import Settings
from .errors import LeaseNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaseRecord:
    expiry_epoch: int
    expiry_readable: str

    def remaining_minutes(self, now: Optional[float] = None) -> int:
        """Whole minutes left on the lease, never negative."""
        now = time.time() if now is None else now
        return max(0, int((self.expiry_epoch - int(now)) // 60))


def _write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(tmp_path, "w") as f:
        f.write(content)
    os.replace(tmp_path, path)


class LeaseStore:
    """Reads and writes the lease record and the pending-connect marker."""

    def __init__(self, settings: Settings):
        self.timestamp_path = settings.lease_timestamp_path
        self.readable_path = settings.lease_readable_path
        self.pending_path = settings.pending_path

    def save(self, expiry_epoch: int, expiry_readable: str) -> LeaseRecord:
        """Persist both lease representations."""
        _write_atomic(self.timestamp_path, f"{int(expiry_epoch)}\n")
        _write_atomic(self.readable_path, f"{expiry_readable}\n")
        logger.debug(f"Saved lease end {expiry_epoch} ({expiry_readable})")
        return LeaseRecord(int(expiry_epoch), expiry_readable)

    def load(self) -> LeaseRecord:
        """
        Read the lease record back.

        Raises:
            LeaseNotFound: If either file is missing or the timestamp is garbage
        """
        try:
            epoch_text = self.timestamp_path.read_text().strip()
            readable = self.readable_path.read_text().rstrip("\n")
        except FileNotFoundError:
            raise LeaseNotFound()

        try:
            expiry_epoch = int(epoch_text)
        except ValueError:
            logger.warning(f"Ignoring malformed lease timestamp: {epoch_text!r}")
            raise LeaseNotFound()

        return LeaseRecord(expiry_epoch, readable)

    def exists(self) -> bool:
        return self.timestamp_path.exists() and self.readable_path.exists()

    # ------------------------------------------------------------------
    # Pending connect marker
    # ------------------------------------------------------------------

    def mark_pending(self, country_code: str, lease_minutes: int) -> None:
        """Record that a connect is in flight."""
        marker = {
            "pid": os.getpid(),
            "started_at": int(time.time()),
            "country_code": country_code,
            "lease_minutes": lease_minutes,
        }
        _write_atomic(self.pending_path, json.dumps(marker))

    def pending(self) -> Optional[Dict[str, Any]]:
        """Return the pending marker, or None if no connect is in flight."""
        try:
            marker = json.loads(self.pending_path.read_text())
        except FileNotFoundError:
            return None
        except ValueError:
            marker = None
        if not isinstance(marker, dict):
            # Unreadable marker still means a connect never finished
            return {"pid": None}
        return marker

    def clear_pending(self) -> None:
        try:
            self.pending_path.unlink()
        except FileNotFoundError:
            pass
