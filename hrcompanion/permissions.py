"""Permission checks performed before acting on lifecycle events."""
from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from hrcompanion.platform import PlatformInfo

logger = logging.getLogger(__name__)

BLUETOOTH_CONNECT = "BLUETOOTH_CONNECT"
POST_NOTIFICATIONS = "POST_NOTIFICATIONS"

PermissionChecker = Callable[[str], bool]


class StaticPermissionChecker:
    """Answer permission queries from a fixed set of granted capabilities."""

    def __init__(self, granted: Iterable[str] = ()) -> None:
        self.granted = {item.upper() for item in granted}

    def __call__(self, permission: str) -> bool:
        return permission.upper() in self.granted

    def grant(self, permission: str) -> None:
        self.granted.add(permission.upper())

    def revoke(self, permission: str) -> None:
        self.granted.discard(permission.upper())


class PermissionGate:
    """Check BLUETOOTH_CONNECT, plus POST_NOTIFICATIONS on newer platforms."""

    def __init__(self, checker: PermissionChecker, platform: Optional[PlatformInfo] = None) -> None:
        self._checker = checker
        self.platform = platform or PlatformInfo()

    def missing(self) -> tuple[str, ...]:
        required = [BLUETOOTH_CONNECT]
        if self.platform.requires_notification_permission:
            required.append(POST_NOTIFICATIONS)
        absent = []
        for permission in required:
            try:
                granted = bool(self._checker(permission))
            except Exception:
                logger.exception("Permission check for %s failed", permission)
                granted = False
            if not granted:
                absent.append(permission)
        return tuple(absent)

    def missing_permissions(self) -> bool:
        return bool(self.missing())


__all__ = [
    "BLUETOOTH_CONNECT",
    "POST_NOTIFICATIONS",
    "PermissionChecker",
    "PermissionGate",
    "StaticPermissionChecker",
]
