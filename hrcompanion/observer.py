"""Companion device lifecycle observer."""
from __future__ import annotations

import contextlib
import logging
from typing import Any, Optional

from hrcompanion.errors import InvalidDeviceAddress
from hrcompanion.metrics import MetricsLogger
from hrcompanion.models.association import AssociationInfo
from hrcompanion.models.broadcast import HrBroadcast
from hrcompanion.models.lifecycle_event import EventKind, LifecycleEvent
from hrcompanion.notifications import NotificationPresenter
from hrcompanion.permissions import PermissionGate
from hrcompanion.platform import PlatformInfo
from hrcompanion.subscription import SubscriptionSlot

logger = logging.getLogger(__name__)

ASSOCIATED_STATUS = "associated"


class LifecycleAdapter:
    """Turn either callback generation into a :class:`LifecycleEvent`.

    Which generation is honoured depends on the platform version: association
    records on TIRAMISU and later, bare addresses before that. Calls of the
    other generation return ``None``.
    """

    def __init__(self, platform: PlatformInfo, peripheral: Any) -> None:
        self.platform = platform
        self.peripheral = peripheral

    def from_association(self, kind: EventKind, association: AssociationInfo) -> Optional[LifecycleEvent]:
        if not self.platform.supports_association_info:
            logger.debug("Association callback ignored on api level %s", self.platform.api_level)
            return None
        address = association.device_mac_address
        if not address:
            logger.debug("Association %s has no device address", association.id)
            return None
        if kind is EventKind.APPEARED:
            return LifecycleEvent.appeared(address, ASSOCIATED_STATUS)
        return LifecycleEvent.disappeared(address)

    def from_address(self, kind: EventKind, address: str) -> Optional[LifecycleEvent]:
        if self.platform.supports_association_info:
            logger.debug("Address callback ignored on api level %s", self.platform.api_level)
            return None
        if not address:
            return None
        if kind is EventKind.DISAPPEARED:
            return LifecycleEvent.disappeared(address, source="address")
        return LifecycleEvent.appeared(address, self._queried_status(address), source="address")

    def _queried_status(self, address: str) -> str:
        try:
            return self.peripheral.connection_state(address).describe()
        except InvalidDeviceAddress:
            return "unknown"


class DeviceLifecycleObserver:
    """React to companion devices appearing and disappearing.

    On appearance the device notification is posted, a connection is
    requested and the heart-rate broadcast listener is (re)started. On
    disappearance the notification is updated, the device is disconnected and
    the listener released. Events are dropped when permissions are missing.
    Nothing raised here reaches the caller.
    """

    def __init__(
        self,
        *,
        presenter: NotificationPresenter,
        peripheral: Any,
        permissions: PermissionGate,
        platform: Optional[PlatformInfo] = None,
        metrics: Optional[MetricsLogger] = None,
        broadcast_duration: Optional[float] = None,
    ) -> None:
        self.presenter = presenter
        self.peripheral = peripheral
        self.permissions = permissions
        self.platform = platform or permissions.platform
        self.metrics = metrics
        self.broadcast_duration = broadcast_duration
        self.adapter = LifecycleAdapter(self.platform, peripheral)
        self.broadcasts = SubscriptionSlot()

    # ------------------------------------------------------------------
    # Association record callbacks
    # ------------------------------------------------------------------
    def on_device_appeared(self, association: AssociationInfo) -> None:
        logger.debug("onDeviceAppeared %s", association.id)
        self._dispatch(self.adapter.from_association(EventKind.APPEARED, association))

    def on_device_disappeared(self, association: AssociationInfo) -> None:
        logger.debug("onDeviceDisappeared %s", association.id)
        self._dispatch(self.adapter.from_association(EventKind.DISAPPEARED, association))

    # ------------------------------------------------------------------
    # Legacy address callbacks
    # ------------------------------------------------------------------
    def on_device_appeared_address(self, address: str) -> None:
        self._dispatch(self.adapter.from_address(EventKind.APPEARED, address))

    def on_device_disappeared_address(self, address: str) -> None:
        self._dispatch(self.adapter.from_address(EventKind.DISAPPEARED, address))

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------
    def handle(self, event: LifecycleEvent) -> None:
        if event.kind is EventKind.APPEARED:
            self._on_appeared(event)
        else:
            self._on_disappeared(event)

    def close(self) -> None:
        self.broadcasts.release()

    def _dispatch(self, event: Optional[LifecycleEvent]) -> None:
        if event is None:
            return
        try:
            with self._scope(event):
                self.handle(event)
        except Exception:
            logger.exception("Handling %s for %s failed", event.kind.value, event.address)

    def _allowed(self, event: LifecycleEvent) -> bool:
        missing = self.permissions.missing()
        if missing:
            logger.debug("Dropping %s for %s, missing %s", event.kind.value, event.address, ", ".join(missing))
            self._journal("permission_denied", event.address, status=event.kind.value, message=",".join(missing))
            return False
        return True

    def _on_appeared(self, event: LifecycleEvent) -> None:
        if not self._allowed(event):
            return
        address = event.address
        try:
            self.presenter.on_device_appeared(address, event.status or ASSOCIATED_STATUS)
        except Exception:
            logger.exception("Posting appearance of %s failed", address)
        self._journal("appeared", address, status=event.status)

        try:
            self.peripheral.connect(address)
        except InvalidDeviceAddress as exc:
            logger.error("Failed to connect to polar device %s. Reason %s", address, exc)
        except Exception:
            logger.exception("Connect request for %s failed", address)

        try:
            self.broadcasts.replace(self._start_broadcasts)
        except Exception:
            logger.exception("Broadcast listener for %s could not start", address)

    def _on_disappeared(self, event: LifecycleEvent) -> None:
        if not self._allowed(event):
            return
        address = event.address
        try:
            self.presenter.on_device_disappeared(address)
        except Exception:
            logger.exception("Posting disappearance of %s failed", address)
        self._journal("disappeared", address)

        try:
            self.peripheral.disconnect(address)
        except Exception:
            logger.exception("Disconnect request for %s failed", address)
        finally:
            self.broadcasts.release()

    def _start_broadcasts(self) -> Any:
        holder: dict[str, Any] = {}

        def on_complete() -> None:
            logger.debug("complete")
            self._journal("broadcast_complete", None)
            self.broadcasts.clear_if(holder.get("subscription"))

        def on_error(error: BaseException) -> None:
            logger.error("Broadcast listener failed. Reason %s", error)
            self._journal("broadcast_error", None, status="error", message=str(error))
            self.broadcasts.clear_if(holder.get("subscription"))

        subscription = self.peripheral.start_broadcast_listener(
            None,
            self._on_broadcast,
            on_error,
            on_complete,
            duration=self.broadcast_duration,
        )
        holder["subscription"] = subscription
        return subscription

    def _on_broadcast(self, data: HrBroadcast) -> None:
        logger.debug("HR BROADCAST %s HR: %s batt: %s", data.device_id, data.hr, data.battery_status)
        self._journal(
            "hr_broadcast",
            data.address,
            value=float(data.hr),
            extra={"device_id": data.device_id, "battery_status": data.battery_status},
        )

    def _scope(self, event: LifecycleEvent) -> Any:
        if not self.metrics:
            return contextlib.nullcontext()
        return self.metrics.scope(source=event.source)

    def _journal(self, event: str, address: Optional[str], **kwargs: Any) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.log(event, address=address, **kwargs)
        except Exception:  # pragma: no cover - logging must not break callbacks
            logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = ["DeviceLifecycleObserver", "LifecycleAdapter"]
