"""Destructive recovery: tear down every WireGuard and TUN interface.

Only reachable through `tpn panic`, after explicit user confirmation.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List

from .driver import WireGuardDriver
from .platform import Platform

logger = logging.getLogger(__name__)


@dataclass
class WipePlan:
    wireguard: List[str] = field(default_factory=list)
    tunnels: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.wireguard and not self.tunnels


@dataclass
class WipeResult:
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    aborted: bool = False


def plan_wipe(driver: WireGuardDriver, platform: Platform) -> WipePlan:
    wireguard = driver.list_active_interfaces(privileged=True)
    tunnels = [name for name in platform.tunnel_interfaces() if name not in wireguard]
    return WipePlan(wireguard=wireguard, tunnels=tunnels)


def wipe_interfaces(
    driver: WireGuardDriver,
    platform: Platform,
    plan: WipePlan,
    confirm: Callable[[str], bool],
) -> WipeResult:
    """
    Delete the planned interfaces once the user agrees.

    WireGuard interfaces are first brought down through wg-quick; if that
    fails the platform takes the interface down itself. Every interface is
    then deleted. Individual failures are collected, never raised.
    """
    result = WipeResult()
    if plan.empty:
        return result
    if not confirm("Delete these interfaces?"):
        result.aborted = True
        return result

    for name in plan.wireguard:
        if not driver.deactivate_interface(name):
            logger.debug(f"wg-quick down {name} failed, deleting link directly")
        # wg-quick down already removes the link; a failed delete is fine then
        deleted = platform.delete_interface(name)
        if deleted or name not in driver.list_active_interfaces(privileged=True):
            result.deleted.append(name)
        else:
            result.failed.append(name)

    for name in plan.tunnels:
        if platform.delete_interface(name):
            result.deleted.append(name)
        else:
            result.failed.append(name)

    return result
