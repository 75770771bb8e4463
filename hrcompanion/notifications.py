"""Keyed device notifications posted when a companion device appears or disappears."""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from rich.console import Console
from rich.panel import Panel

from hrcompanion.models.notification_record import (
    IMPORTANCE_HIGH,
    NotificationChannel,
    NotificationRecord,
    notification_key,
)

logger = logging.getLogger(__name__)

CDM_CHANNEL = "cdm_channel"
DEFAULT_TITLE = "Companion Device Monitor"


class NotificationTray(ABC):
    """Destination for keyed notifications."""

    @abstractmethod
    def create_channel(self, channel: NotificationChannel) -> None:
        """Register ``channel``; registering an existing id is a no-op."""

    @abstractmethod
    def notify(self, record: NotificationRecord) -> None:
        """Post ``record``, replacing any record already posted under its key."""

    @abstractmethod
    def cancel(self, key: int) -> None:
        """Remove the record posted under ``key``, if any."""

    @abstractmethod
    def active(self) -> Dict[int, NotificationRecord]:
        """Snapshot of posted records by key."""


class MemoryTray(NotificationTray):
    """In-process tray; keeps the latest record per key."""

    def __init__(self) -> None:
        self.channels: Dict[str, NotificationChannel] = {}
        self._records: Dict[int, NotificationRecord] = {}
        self._lock = threading.Lock()
        self.post_count = 0

    def create_channel(self, channel: NotificationChannel) -> None:
        with self._lock:
            self.channels.setdefault(channel.id, channel)

    def notify(self, record: NotificationRecord) -> None:
        with self._lock:
            if record.channel_id not in self.channels:
                raise LookupError(f"notification channel {record.channel_id!r} does not exist")
            self._records[record.key] = record
            self.post_count += 1

    def cancel(self, key: int) -> None:
        with self._lock:
            self._records.pop(key, None)

    def active(self) -> Dict[int, NotificationRecord]:
        with self._lock:
            return dict(self._records)


class ConsoleTray(MemoryTray):
    """Memory tray that also renders every post to the terminal."""

    def __init__(self, console: Optional[Console] = None) -> None:
        super().__init__()
        self.console = console or Console()

    def notify(self, record: NotificationRecord) -> None:
        updated = record.key in self.active()
        super().notify(record)
        subtitle = "updated" if updated else "posted"
        self.console.print(Panel(record.body, title=record.title, subtitle=f"#{record.key} {subtitle}"))


class NotificationPresenter:
    """Render and post one notification per device address."""

    def __init__(
        self,
        tray: NotificationTray,
        *,
        title: str = DEFAULT_TITLE,
        channel: Optional[NotificationChannel] = None,
    ) -> None:
        self.tray = tray
        self.title = title
        self.channel = channel or NotificationChannel(
            id=CDM_CHANNEL,
            name="CDM Sample",
            description="Channel for companion device presence",
            importance=IMPORTANCE_HIGH,
        )
        self._channel_ready = False
        self._ensure_channel()

    def present(self, address: str, status: str, detail: Optional[str] = None) -> NotificationRecord:
        """Post or update the notification for ``address``."""
        body = f"Device: {address} {status}"
        if detail:
            body = f"{body}.\nStatus: {detail}"
        return self._post(address, body)

    def on_device_appeared(self, address: str, status: str) -> NotificationRecord:
        return self.present(address, "appeared", status)

    def on_device_disappeared(self, address: str) -> NotificationRecord:
        return self.present(address, "disappeared")

    def _post(self, address: str, body: str) -> NotificationRecord:
        self._ensure_channel()
        record = NotificationRecord(
            key=notification_key(address),
            channel_id=self.channel.id,
            title=self.title,
            body=body,
        )
        self.tray.notify(record)
        logger.debug("Posted notification %s for %s", record.key, address)
        return record

    def _ensure_channel(self) -> None:
        if self._channel_ready:
            return
        self.tray.create_channel(self.channel)
        self._channel_ready = True


__all__ = [
    "CDM_CHANNEL",
    "ConsoleTray",
    "MemoryTray",
    "NotificationPresenter",
    "NotificationTray",
]
