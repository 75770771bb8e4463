from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class EventKind(str, Enum):
    APPEARED = "appeared"
    DISAPPEARED = "disappeared"


@dataclass(frozen=True)
class LifecycleEvent:
    """A presence transition for one device, independent of the callback shape it arrived in."""
    kind: EventKind
    address: str
    status: Optional[str] = None
    source: str = "association"  # 'association' | 'address'

    @classmethod
    def appeared(cls, address: str, status: Optional[str] = None, *, source: str = "association") -> "LifecycleEvent":
        return cls(EventKind.APPEARED, address, status, source)

    @classmethod
    def disappeared(cls, address: str, *, source: str = "association") -> "LifecycleEvent":
        return cls(EventKind.DISAPPEARED, address, None, source)
