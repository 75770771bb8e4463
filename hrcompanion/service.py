"""Wiring of the companion service from a :class:`CompanionConfig`."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from hrcompanion.associations import AssociationStore
from hrcompanion.config import CompanionConfig
from hrcompanion.metrics import MetricsLogger
from hrcompanion.notifications import ConsoleTray, MemoryTray, NotificationPresenter, NotificationTray
from hrcompanion.observer import DeviceLifecycleObserver
from hrcompanion.peripheral import PeripheralCallback, PeripheralClient
from hrcompanion.permissions import PermissionGate, StaticPermissionChecker
from hrcompanion.platform import PlatformInfo
from hrcompanion.presence import PresenceConfig, PresenceMonitor

logger = logging.getLogger(__name__)


class CompanionService:
    """Owns the observer and everything it talks to."""

    def __init__(
        self,
        *,
        config: CompanionConfig,
        tray: NotificationTray,
        store: AssociationStore,
        peripheral: Any,
        permissions: PermissionGate,
        metrics: Optional[MetricsLogger] = None,
        scanner_factory: Any = None,
    ) -> None:
        self.config = config
        self.platform = permissions.platform
        self.tray = tray
        self.store = store
        self.peripheral = peripheral
        self.permissions = permissions
        self.metrics = metrics
        self.presenter = NotificationPresenter(tray)
        self.observer = DeviceLifecycleObserver(
            presenter=self.presenter,
            peripheral=peripheral,
            permissions=permissions,
            platform=self.platform,
            metrics=metrics,
            broadcast_duration=config.broadcast_duration,
        )
        presence_kwargs: dict[str, Any] = {"metrics": metrics}
        if scanner_factory is not None:
            presence_kwargs["scanner_factory"] = scanner_factory
        self.presence = PresenceMonitor(
            store,
            self.observer,
            self.platform,
            PresenceConfig(
                absence_timeout=config.absence_timeout,
                tick_interval=config.tick_interval,
                adapter=config.adapter,
            ),
            **presence_kwargs,
        )

    @classmethod
    def from_config(
        cls,
        config: CompanionConfig,
        *,
        tray: Optional[NotificationTray] = None,
        peripheral: Any = None,
        callback: Optional[PeripheralCallback] = None,
        scanner_factory: Any = None,
    ) -> "CompanionService":
        platform = PlatformInfo(api_level=config.api_level)
        permissions = PermissionGate(StaticPermissionChecker(config.granted_permissions), platform)
        metrics = MetricsLogger(config.metrics_path, static_extra=config.extra) if config.metrics_path else None
        if tray is None:
            tray = ConsoleTray() if config.console_notifications else MemoryTray()
        if peripheral is None:
            client_kwargs: dict[str, Any] = {}
            if scanner_factory is not None:
                client_kwargs["scanner_factory"] = scanner_factory
            peripheral = PeripheralClient(
                adapter=config.adapter,
                connect_timeout=config.connect_timeout,
                callback=callback,
                metrics=metrics,
                **client_kwargs,
            )
        return cls(
            config=config,
            tray=tray,
            store=AssociationStore(config.associations_path),
            peripheral=peripheral,
            permissions=permissions,
            metrics=metrics,
            scanner_factory=scanner_factory,
        )

    async def run(self, runtime: Optional[float] = None) -> None:
        bind = getattr(self.peripheral, "bind_loop", None)
        if callable(bind):
            bind(asyncio.get_running_loop())
        missing = self.permissions.missing()
        if missing:
            logger.warning("Missing permissions %s; lifecycle events will be dropped", ", ".join(missing))
        logger.info("Watching %d associated device(s)", len(self.store.all()))
        try:
            await self.presence.run(runtime=runtime)
        finally:
            await self.shutdown()

    def request_stop(self) -> None:
        self.presence.request_stop()

    async def shutdown(self) -> None:
        self.observer.close()
        shutdown = getattr(self.peripheral, "shutdown", None)
        if callable(shutdown):
            outcome = shutdown()
            if asyncio.iscoroutine(outcome):
                await outcome


__all__ = ["CompanionService"]
