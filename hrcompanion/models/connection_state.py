from __future__ import annotations
from enum import IntEnum


class ConnectionState(IntEnum):
    """GATT profile connection states."""
    DISCONNECTED = 0
    CONNECTING = 1
    CONNECTED = 2
    DISCONNECTING = 3

    def describe(self) -> str:
        return self.name.lower()
