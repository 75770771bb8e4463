"""JSON-file store of associated companion devices."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from hrcompanion.models.association import AssociationInfo
from hrcompanion.peripheral import validate_address

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = "heart_rate_sensor"


class AssociationStore:
    """Persist the devices this host is allowed to watch.

    Records are keyed by a monotonically increasing id that is never reused,
    even after the record is removed.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._records: Dict[int, AssociationInfo] = {}
        self._next_id = 1
        self._load()

    def all(self) -> List[AssociationInfo]:
        with self._lock:
            return [self._records[key] for key in sorted(self._records)]

    def addresses(self) -> List[str]:
        return [info.device_mac_address for info in self.all() if info.device_mac_address]

    def get(self, association_id: int) -> Optional[AssociationInfo]:
        with self._lock:
            return self._records.get(association_id)

    def get_by_address(self, address: str) -> Optional[AssociationInfo]:
        wanted = address.upper()
        with self._lock:
            for info in self._records.values():
                if info.device_mac_address and info.device_mac_address.upper() == wanted:
                    return info
        return None

    def associate(
        self,
        address: str,
        display_name: Optional[str] = None,
        device_profile: Optional[str] = DEFAULT_PROFILE,
    ) -> AssociationInfo:
        address = validate_address(address)
        existing = self.get_by_address(address)
        if existing is not None:
            return existing
        with self._lock:
            info = AssociationInfo(
                id=self._next_id,
                device_mac_address=address,
                display_name=display_name,
                device_profile=device_profile,
            )
            self._records[info.id] = info
            self._next_id += 1
            self._save()
        logger.info("Associated %s as #%d", address, info.id)
        return info

    def disassociate(self, association_id: int) -> bool:
        with self._lock:
            removed = self._records.pop(association_id, None)
            if removed is None:
                return False
            self._save()
        logger.info("Removed association #%d (%s)", association_id, removed.device_mac_address)
        return True

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid associations file {self.path}: {exc}") from exc
        for entry in payload.get("associations", []):
            info = AssociationInfo.from_dict(entry)
            self._records[info.id] = info
        self._next_id = max(int(payload.get("next_id", 1)), max(self._records, default=0) + 1)

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "next_id": self._next_id,
            "associations": [self._records[key].to_dict() for key in sorted(self._records)],
        }
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(self.path)


__all__ = ["AssociationStore"]
