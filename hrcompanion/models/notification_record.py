from __future__ import annotations
from dataclasses import dataclass

IMPORTANCE_DEFAULT = 3
IMPORTANCE_HIGH = 4


def notification_key(address: str) -> int:
    """Derive a stable 32-bit notification id from a device address.

    Uses the ``String.hashCode`` recurrence (``h = 31 * h + unit`` over UTF-16
    code units, wrapped to a signed 32-bit int). The builtin :func:`hash` is
    salted per process and cannot be used for keys that outlive one run.
    """
    h = 0
    raw = address.encode("utf-16-le")
    for index in range(0, len(raw), 2):
        unit = raw[index] | (raw[index + 1] << 8)
        h = (31 * h + unit) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return h


@dataclass(frozen=True)
class NotificationChannel:
    id: str
    name: str
    description: str = ""
    importance: int = IMPORTANCE_DEFAULT


@dataclass(frozen=True)
class NotificationRecord:
    """One posted notification. Posting another record with the same key replaces it."""
    key: int
    channel_id: str
    title: str
    body: str
