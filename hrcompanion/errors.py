"""Exception types raised by hrcompanion components."""
from __future__ import annotations


class CompanionError(Exception):
    """Base class for hrcompanion failures."""


class PeripheralConnectionFailure(CompanionError):
    """Connecting to or disconnecting from a peripheral failed."""


class InvalidDeviceAddress(PeripheralConnectionFailure, ValueError):
    """The supplied identifier is not a usable device address."""

    def __init__(self, address: object) -> None:
        self.address = address
        super().__init__(f"invalid device address: {address!r}")


class BroadcastStreamError(CompanionError):
    """The heart-rate broadcast listener stopped with an error."""


__all__ = [
    "CompanionError",
    "PeripheralConnectionFailure",
    "InvalidDeviceAddress",
    "BroadcastStreamError",
]
