"""Presence tracking for associated devices, driven by BLE advertisements."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from time import monotonic
from typing import Any, Callable, Dict, List, Optional, Set

from bleak import BleakScanner

from hrcompanion.associations import AssociationStore
from hrcompanion.metrics import MetricsLogger
from hrcompanion.models.association import AssociationInfo
from hrcompanion.platform import PlatformInfo

logger = logging.getLogger(__name__)


def dispatch_appeared(observer: Any, platform: PlatformInfo, info: AssociationInfo) -> None:
	"""Deliver an appearance in the callback shape the platform version uses."""
	if platform.supports_association_info:
		observer.on_device_appeared(info)
	elif info.device_mac_address:
		observer.on_device_appeared_address(info.device_mac_address)


def dispatch_disappeared(observer: Any, platform: PlatformInfo, info: AssociationInfo) -> None:
	if platform.supports_association_info:
		observer.on_device_disappeared(info)
	elif info.device_mac_address:
		observer.on_device_disappeared_address(info.device_mac_address)


@dataclass(slots=True)
class PresenceConfig:
	absence_timeout: float = 15.0
	tick_interval: float = 1.0
	adapter: Optional[str] = None
	scanner_kwargs: Dict[str, Any] = field(default_factory=dict)

	def __post_init__(self) -> None:
		if self.absence_timeout <= 0:
			raise ValueError("absence_timeout must be positive")
		if self.tick_interval <= 0:
			raise ValueError("tick_interval must be positive")

	def bleak_kwargs(self) -> Dict[str, Any]:
		kwargs = dict(self.scanner_kwargs)
		if self.adapter and "adapter" not in kwargs:
			kwargs["adapter"] = self.adapter
		return kwargs


class PresenceMonitor:
	"""Report associated devices appearing in and disappearing from radio range.

	A device appears on its first advertisement and disappears once nothing
	has been heard from it for ``absence_timeout`` seconds. Devices still
	present when the monitor stops are reported as disappeared.
	"""

	def __init__(
		self,
		store: AssociationStore,
		observer: Any,
		platform: PlatformInfo,
		config: Optional[PresenceConfig] = None,
		*,
		metrics: Optional[MetricsLogger] = None,
		scanner_factory: Callable[..., Any] = BleakScanner,
		clock: Callable[[], float] = monotonic,
	) -> None:
		self.store = store
		self.observer = observer
		self.platform = platform
		self.config = config or PresenceConfig()
		self.metrics = metrics
		self._scanner_factory = scanner_factory
		self._clock = clock
		self._last_seen: Dict[str, float] = {}
		self._present: Set[str] = set()
		self._stop_event: Optional[asyncio.Event] = None

	@property
	def present(self) -> List[str]:
		return sorted(self._present)

	@property
	def running(self) -> bool:
		return self._stop_event is not None and not self._stop_event.is_set()

	async def run(self, runtime: Optional[float] = None) -> None:
		"""Scan until :meth:`request_stop` is called or ``runtime`` elapses."""
		stop_event = asyncio.Event()
		self._stop_event = stop_event
		deadline = monotonic() + runtime if runtime else None
		self._journal("presence_start", status="pending")

		try:
			scanner = self._scanner_factory(detection_callback=self._on_detection, **self.config.bleak_kwargs())
			async with scanner:
				while not stop_event.is_set():
					if deadline and monotonic() >= deadline:
						break
					self.expire()
					await self._sleep_with_stop(self.config.tick_interval, stop_event, deadline)
		except asyncio.CancelledError:
			self._journal("presence_stop", status="cancelled")
			raise
		except Exception as exc:
			logger.exception("Presence scan failed: %s", exc)
			self._journal("presence_stop", status="error", message=str(exc))
			raise
		finally:
			stop_event.set()
			self.flush()
		self._journal("presence_stop", status="ok")

	def request_stop(self) -> None:
		if self._stop_event:
			self._stop_event.set()

	def seen(self, address: str) -> None:
		"""Record a sighting of ``address``; dispatches an appearance on the first one."""
		info = self.store.get_by_address(address)
		if info is None or not info.device_mac_address:
			return
		key = info.device_mac_address.upper()
		self._last_seen[key] = self._clock()
		if key in self._present:
			return
		self._present.add(key)
		logger.info("Associated device %s appeared", key)
		self._safe_dispatch(dispatch_appeared, info)

	def expire(self) -> List[str]:
		"""Dispatch disappearances for devices silent longer than the absence timeout."""
		now = self._clock()
		gone = [
			key for key in sorted(self._present)
			if now - self._last_seen.get(key, now) >= self.config.absence_timeout
		]
		for key in gone:
			self._vanish(key)
		return gone

	def flush(self) -> None:
		for key in sorted(self._present):
			self._vanish(key)

	def _vanish(self, key: str) -> None:
		self._present.discard(key)
		self._last_seen.pop(key, None)
		info = self.store.get_by_address(key)
		if info is None:
			info = AssociationInfo(id=0, device_mac_address=key)
		logger.info("Associated device %s disappeared", key)
		self._safe_dispatch(dispatch_disappeared, info)

	def _on_detection(self, device: Any, advertisement: Any) -> None:
		address = getattr(device, "address", None)
		if address:
			self.seen(address)

	def _safe_dispatch(self, dispatcher: Callable[[Any, PlatformInfo, AssociationInfo], None], info: AssociationInfo) -> None:
		try:
			dispatcher(self.observer, self.platform, info)
		except Exception:
			logger.exception("Observer raised while handling %s", info.device_mac_address)

	async def _sleep_with_stop(self, duration: float, stop_event: asyncio.Event, deadline: Optional[float]) -> None:
		wait_time = duration
		if deadline:
			wait_time = min(wait_time, max(0.0, deadline - monotonic()))
			if wait_time <= 0:
				return
		with contextlib.suppress(asyncio.TimeoutError):
			await asyncio.wait_for(stop_event.wait(), timeout=wait_time)

	def _journal(self, event: str, **kwargs: Any) -> None:
		if not self.metrics:
			return
		try:
			self.metrics.log(event, **kwargs)
		except Exception:  # pragma: no cover - I/O failure safeguard
			logger.debug("Metrics logging failed for %s", event, exc_info=True)


async def discover(timeout: float = 6.0, *, name_prefix: Optional[str] = "Polar", adapter: Optional[str] = None) -> List[Dict[str, Any]]:
	"""List nearby devices, optionally restricted to names starting with ``name_prefix``."""
	kwargs: Dict[str, Any] = {"timeout": timeout, "return_adv": True}
	if adapter:
		kwargs["adapter"] = adapter
	results = await BleakScanner.discover(**kwargs)
	devices: List[Dict[str, Any]] = []
	for device, advertisement in results.values():
		name = getattr(advertisement, "local_name", None) or device.name
		if name_prefix and not (name or "").lower().startswith(name_prefix.lower()):
			continue
		devices.append({
			"address": device.address,
			"name": name,
			"rssi": getattr(advertisement, "rssi", None),
		})
	devices.sort(key=lambda entry: entry["rssi"] if entry["rssi"] is not None else -999, reverse=True)
	return devices


__all__ = [
	"PresenceConfig",
	"PresenceMonitor",
	"discover",
	"dispatch_appeared",
	"dispatch_disappeared",
]
