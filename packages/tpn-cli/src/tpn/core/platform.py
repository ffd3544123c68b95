"""Platform capabilities: lease date arithmetic and network interface wiping.

One implementation per supported OS, selected once at startup by
get_platform(). The destructive helpers are only used by `tpn panic`.
"""

from __future__ import annotations

import logging
import subprocess
import sys
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional

from .errors import UnsupportedPlatform

logger = logging.getLogger(__name__)

READABLE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Interfaces panic is allowed to touch besides WireGuard ones
TUNNEL_INTERFACE_PREFIXES = ("tun", "utun")


class Platform(ABC):
    """Operating system specific operations."""

    name: str = "unknown"

    def add_minutes(self, now: datetime, minutes: int) -> datetime:
        return now + timedelta(minutes=minutes)

    def format_readable(self, moment: datetime) -> str:
        return moment.strftime(READABLE_FORMAT)

    @abstractmethod
    def list_network_interfaces(self) -> List[str]:
        """Names of all network interfaces on the machine."""

    @abstractmethod
    def delete_interface(self, name: str) -> bool:
        """Bring an interface down and delete it. Returns success."""

    def tunnel_interfaces(self) -> List[str]:
        return [
            name
            for name in self.list_network_interfaces()
            if name.startswith(TUNNEL_INTERFACE_PREFIXES)
        ]

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        logger.debug(f"Running: {' '.join(cmd)}")
        return subprocess.run(cmd, capture_output=True, text=True)


class LinuxPlatform(Platform):
    name = "Linux"

    def list_network_interfaces(self) -> List[str]:
        try:
            result = self._run(["ip", "-o", "link", "show"])
        except FileNotFoundError:
            logger.warning("ip command not found")
            return []
        names = []
        for line in result.stdout.splitlines():
            # "3: wg0: <POINTOPOINT,NOARP,UP> mtu 1420 ..."
            parts = line.split(": ", 2)
            if len(parts) >= 2:
                names.append(parts[1].split("@", 1)[0])
        return names

    def delete_interface(self, name: str) -> bool:
        try:
            self._run(["sudo", "ip", "link", "set", name, "down"])
            result = self._run(["sudo", "ip", "link", "delete", name])
        except FileNotFoundError:
            return False
        if result.returncode != 0:
            logger.warning(f"Could not delete interface {name}: {result.stderr.strip()}")
        return result.returncode == 0


class DarwinPlatform(Platform):
    name = "Darwin"

    def list_network_interfaces(self) -> List[str]:
        try:
            result = self._run(["ifconfig", "-l"])
        except FileNotFoundError:
            logger.warning("ifconfig command not found")
            return []
        return result.stdout.split()

    def delete_interface(self, name: str) -> bool:
        try:
            result = self._run(["sudo", "ifconfig", name, "destroy"])
        except FileNotFoundError:
            return False
        if result.returncode != 0:
            logger.warning(f"Could not delete interface {name}: {result.stderr.strip()}")
        return result.returncode == 0


def get_platform(platform_name: Optional[str] = None) -> Platform:
    """
    Select the platform implementation.

    Args:
        platform_name: sys.platform style name, defaults to the running OS

    Raises:
        UnsupportedPlatform: For anything other than Linux and macOS
    """
    platform_name = platform_name or sys.platform
    if platform_name.startswith("linux"):
        return LinuxPlatform()
    if platform_name == "darwin":
        return DarwinPlatform()
    raise UnsupportedPlatform(platform_name)
