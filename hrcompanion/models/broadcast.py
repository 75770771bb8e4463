from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional
import re

POLAR_COMPANY_ID = 0x006B

_DEVICE_ID = re.compile(r"^[0-9A-Fa-f]{8}$")


@dataclass(frozen=True)
class HrBroadcast:
    """Heart rate carried in a Polar sensor advertisement."""
    device_id: str
    address: str
    hr: int
    battery_status: bool
    name: Optional[str] = None
    rssi: Optional[int] = None

    @classmethod
    def from_advertisement(cls, device: Any, advertisement: Any) -> Optional["HrBroadcast"]:
        """Decode a bleak (device, advertisement) pair; ``None`` when it carries no heart rate."""
        manufacturer_data = getattr(advertisement, "manufacturer_data", None) or {}
        payload = manufacturer_data.get(POLAR_COMPANY_ID)
        if payload is None or len(payload) < 3:
            return None
        payload = bytes(payload)
        name = getattr(advertisement, "local_name", None) or getattr(device, "name", None)
        rssi = getattr(advertisement, "rssi", None)
        if rssi is None:
            rssi = getattr(device, "rssi", None)
        return cls(
            device_id=device_id_from_name(name) or device.address,
            address=device.address,
            hr=payload[-1],
            battery_status=bool(payload[0] & 0x01),
            name=name,
            rssi=rssi,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "address": self.address,
            "hr": self.hr,
            "battery_status": self.battery_status,
            "name": self.name,
            "rssi": self.rssi,
        }


def device_id_from_name(name: Optional[str]) -> Optional[str]:
    """Polar sensors advertise as e.g. ``Polar H10 1A2B3C4D``; return the trailing id."""
    if not name:
        return None
    tail = name.split()[-1]
    if _DEVICE_ID.match(tail):
        return tail.upper()
    return None
