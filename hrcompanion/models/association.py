from __future__ import annotations
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class AssociationInfo:
    """An associated companion device as reported by the pairing subsystem."""
    id: int
    device_mac_address: Optional[str] = None
    display_name: Optional[str] = None
    device_profile: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AssociationInfo":
        return cls(
            id=int(payload["id"]),
            device_mac_address=payload.get("device_mac_address"),
            display_name=payload.get("display_name"),
            device_profile=payload.get("device_profile"),
        )
