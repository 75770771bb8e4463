"""Platform version gates."""
from __future__ import annotations

from dataclasses import dataclass

# API levels of the two pairing-callback generations.
S = 31
TIRAMISU = 33


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    """Describes which lifecycle callback generation the host delivers."""

    api_level: int = TIRAMISU

    @property
    def supports_association_info(self) -> bool:
        return self.api_level >= TIRAMISU

    @property
    def requires_notification_permission(self) -> bool:
        return self.api_level >= TIRAMISU


__all__ = ["PlatformInfo", "S", "TIRAMISU"]
