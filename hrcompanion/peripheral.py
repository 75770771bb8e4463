"""Peripheral client for Polar heart-rate sensors, built on bleak."""
from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Set, Union

from bleak import BleakClient, BleakScanner

from hrcompanion.errors import BroadcastStreamError, InvalidDeviceAddress
from hrcompanion.metrics import MetricsLogger
from hrcompanion.models.broadcast import HrBroadcast
from hrcompanion.models.connection_state import ConnectionState

logger = logging.getLogger(__name__)
sdk_logger = logging.getLogger("hrcompanion.sdk")

HEART_RATE_SERVICE = "0000180d-0000-1000-8000-00805f9b34fb"
FEATURE_HR = "hr"

_MAC = re.compile(r"^(?:[0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$")
_UUID = re.compile(r"^[0-9A-Fa-f]{8}-(?:[0-9A-Fa-f]{4}-){3}[0-9A-Fa-f]{12}$")

Pending = Union[asyncio.Task, concurrent.futures.Future]
BroadcastHandler = Callable[[HrBroadcast], None]
ErrorHandler = Callable[[BaseException], None]
CompleteHandler = Callable[[], None]


def validate_address(address: Any) -> str:
	"""Return ``address`` normalised, or raise :class:`InvalidDeviceAddress`."""
	if not isinstance(address, str):
		raise InvalidDeviceAddress(address)
	candidate = address.strip()
	if _MAC.match(candidate) or _UUID.match(candidate):
		return candidate.upper()
	raise InvalidDeviceAddress(address)


@dataclass(slots=True)
class SessionConfig:
	address: str
	adapter: Optional[str] = None
	timeout: float = 10.0
	metrics: Optional[MetricsLogger] = None
	on_lost: Optional[Callable[[str], None]] = None


class DeviceSession:
	"""One bleak connection to a sensor.

	A link the sensor drops on its own is reported through ``config.on_lost``.
	"""

	def __init__(self, config: SessionConfig, client_factory: Callable[..., Any] = BleakClient) -> None:
		self.config = config
		self._client_factory = client_factory
		self._client: Optional[Any] = None
		self._lock = asyncio.Lock()

	async def connect(self) -> bool:
		async with self._lock:
			if self._client is not None and self._client.is_connected:
				return True
			kwargs: Dict[str, Any] = {"timeout": self.config.timeout}
			if self.config.adapter:
				kwargs["adapter"] = self.config.adapter
			kwargs["disconnected_callback"] = self._on_client_disconnected
			client = self._client_factory(self.config.address, **kwargs)
			self._client = client
			sdk_logger.debug("connecting %s", self.config.address)
			try:
				await client.connect()
			except Exception:
				self._client = None
				raise
			connected = bool(client.is_connected)
			if not connected:
				self._client = None
			sdk_logger.debug("connect %s -> %s", self.config.address, connected)
			return connected

	async def disconnect(self) -> None:
		async with self._lock:
			client, self._client = self._client, None
			if client is None:
				return
			try:
				await client.disconnect()
			except Exception as exc:
				logger.warning("Disconnect encountered error for %s: %s", self.config.address, exc)
			sdk_logger.debug("disconnected %s", self.config.address)

	def _on_client_disconnected(self, client: Any) -> None:
		if client is not self._client:
			return
		self._client = None
		sdk_logger.debug("link lost %s", self.config.address)
		if self.config.on_lost is not None:
			self.config.on_lost(self.config.address)

	@property
	def is_connected(self) -> bool:
		return self._client is not None and bool(self._client.is_connected)

	def has_service(self, uuid: str) -> bool:
		if self._client is None:
			return False
		with contextlib.suppress(Exception):
			return self._client.services.get_service(uuid) is not None
		return False


class PeripheralCallback:
	"""Connection lifecycle hooks. Override the ones you need."""

	def device_connecting(self, address: str) -> None:
		logger.debug("deviceConnecting %s", address)

	def device_connected(self, address: str) -> None:
		logger.debug("deviceConnected %s", address)

	def device_disconnected(self, address: str) -> None:
		logger.debug("deviceDisconnected %s", address)

	def feature_ready(self, address: str, feature: str) -> None:
		logger.debug("featureReady %s %s", address, feature)


class BroadcastSubscription:
	"""Disposable stream of :class:`HrBroadcast` items.

	Delivers items through ``on_next`` until disposed. A scanner failure is
	delivered once through ``on_error``; reaching ``duration`` is delivered
	once through ``on_complete``. Disposing delivers neither.
	"""

	def __init__(
		self,
		*,
		device_ids: Optional[Iterable[str]],
		on_next: Optional[BroadcastHandler],
		on_error: Optional[ErrorHandler],
		on_complete: Optional[CompleteHandler],
		scanner_factory: Callable[..., Any],
		scanner_kwargs: Optional[Dict[str, Any]] = None,
		duration: Optional[float] = None,
	) -> None:
		self.device_ids: Optional[frozenset[str]] = (
			frozenset(item.upper() for item in device_ids) if device_ids else None
		)
		self._on_next = on_next
		self._on_error = on_error
		self._on_complete = on_complete
		self._scanner_factory = scanner_factory
		self._scanner_kwargs = dict(scanner_kwargs or {})
		self.duration = duration
		self._disposed = False
		self._terminated = False
		self._pending: Optional[Pending] = None
		self._listeners: list[Callable[["BroadcastSubscription"], None]] = []

	@property
	def is_disposed(self) -> bool:
		return self._disposed or self._terminated

	def add_done_listener(self, listener: Callable[["BroadcastSubscription"], None]) -> None:
		self._listeners.append(listener)

	def dispose(self) -> None:
		if self._disposed:
			return
		self._disposed = True
		if self._pending is not None and not self._pending.done():
			self._pending.cancel()
		self._fire_done()

	def _attach(self, pending: Pending) -> None:
		self._pending = pending
		if self._disposed:
			pending.cancel()

	async def _run(self) -> None:
		try:
			scanner = self._scanner_factory(detection_callback=self._on_detection, **self._scanner_kwargs)
			async with scanner:
				if self.duration is None:
					await asyncio.Event().wait()
				else:
					await asyncio.sleep(self.duration)
		except asyncio.CancelledError:
			raise
		except Exception as exc:
			error = BroadcastStreamError(str(exc) or type(exc).__name__)
			error.__cause__ = exc
			self._terminate(error)
		else:
			self._terminate(None)

	def _on_detection(self, device: Any, advertisement: Any) -> None:
		if self.is_disposed:
			return
		item = HrBroadcast.from_advertisement(device, advertisement)
		if item is None:
			return
		if self.device_ids and item.device_id not in self.device_ids and item.address.upper() not in self.device_ids:
			return
		if self._on_next is None:
			return
		try:
			self._on_next(item)
		except Exception:
			logger.exception("Broadcast handler raised for %s", item.address)

	def _terminate(self, error: Optional[BaseException]) -> None:
		if self.is_disposed:
			return
		self._terminated = True
		handler: Optional[Callable[..., None]]
		args: tuple = ()
		if error is None:
			handler = self._on_complete
		else:
			handler = self._on_error
			args = (error,)
		if handler is not None:
			try:
				handler(*args)
			except Exception:
				logger.exception("Broadcast terminal handler raised")
		self._fire_done()

	def _fire_done(self) -> None:
		listeners, self._listeners = self._listeners, []
		for listener in listeners:
			with contextlib.suppress(Exception):
				listener(self)


class PeripheralClient:
	"""Connect, disconnect and broadcast listening keyed by device address.

	``connect`` and ``disconnect`` return immediately; the bleak work runs on
	the event loop and its failures are logged rather than raised. Only an
	unusable address is reported synchronously, as :class:`InvalidDeviceAddress`.
	"""

	def __init__(
		self,
		*,
		adapter: Optional[str] = None,
		connect_timeout: float = 10.0,
		callback: Optional[PeripheralCallback] = None,
		metrics: Optional[MetricsLogger] = None,
		loop: Optional[asyncio.AbstractEventLoop] = None,
		session_factory: Optional[Callable[[SessionConfig], Any]] = None,
		scanner_factory: Callable[..., Any] = BleakScanner,
	) -> None:
		self.adapter = adapter
		self.connect_timeout = max(1.0, connect_timeout)
		self.callback = callback or PeripheralCallback()
		self.metrics = metrics
		self._loop = loop
		self._session_factory: Callable[[SessionConfig], Any] = session_factory or DeviceSession
		self._scanner_factory = scanner_factory
		self._sessions: Dict[str, Any] = {}
		self._states: Dict[str, ConnectionState] = {}
		self._pending: Dict[str, Pending] = {}
		self._listeners: Set[BroadcastSubscription] = set()

	def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
		self._loop = loop

	# ------------------------------------------------------------------
	# Connections
	# ------------------------------------------------------------------
	def connection_state(self, address: str) -> ConnectionState:
		address = validate_address(address)
		self._check_link(address)
		return self._states.get(address, ConnectionState.DISCONNECTED)

	def connect(self, address: str) -> None:
		address = validate_address(address)
		self._check_link(address)
		state = self._states.get(address, ConnectionState.DISCONNECTED)
		if state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
			logger.debug("connect(%s) ignored, state is %s", address, state.describe())
			return
		self._states[address] = ConnectionState.CONNECTING
		self._emit("device_connecting", address)
		self._pending[address] = self._spawn(self._connect(address))

	def disconnect(self, address: str) -> None:
		address = validate_address(address)
		pending = self._pending.pop(address, None)
		if pending is not None and not pending.done():
			pending.cancel()
		session = self._sessions.pop(address, None)
		if session is None:
			self._states[address] = ConnectionState.DISCONNECTED
			return
		self._states[address] = ConnectionState.DISCONNECTING
		self._spawn(self._disconnect(address, session))

	async def _connect(self, address: str) -> None:
		session = self._session_factory(
			SessionConfig(
				address=address,
				adapter=self.adapter,
				timeout=self.connect_timeout,
				metrics=self.metrics,
				on_lost=self._on_link_lost,
			)
		)
		self._sessions[address] = session
		try:
			connected = await session.connect()
		except asyncio.CancelledError:
			self._drop(address, session)
			with contextlib.suppress(Exception):
				await session.disconnect()
			raise
		except Exception as exc:
			logger.error("Failed to connect to polar device %s. Reason %s", address, exc)
			self._journal("connect", address, status="error", message=str(exc))
			self._drop(address, session)
			return
		finally:
			self._pending.pop(address, None)

		if not connected:
			logger.warning("Connection to %s was not established", address)
			self._journal("connect", address, status="failed")
			self._drop(address, session)
			return

		self._states[address] = ConnectionState.CONNECTED
		self._journal("connect", address, status="ok")
		self._emit("device_connected", address)
		if session.has_service(HEART_RATE_SERVICE):
			self._emit("feature_ready", address, FEATURE_HR)

	async def _disconnect(self, address: str, session: Any) -> None:
		try:
			await session.disconnect()
			self._journal("disconnect", address, status="ok")
		except Exception as exc:
			logger.warning("Disconnect from %s failed: %s", address, exc)
			self._journal("disconnect", address, status="error", message=str(exc))
		finally:
			if self._states.get(address) == ConnectionState.DISCONNECTING:
				self._states[address] = ConnectionState.DISCONNECTED
			self._emit("device_disconnected", address)

	def _check_link(self, address: str) -> None:
		if self._states.get(address) != ConnectionState.CONNECTED:
			return
		session = self._sessions.get(address)
		if session is not None and not getattr(session, "is_connected", True):
			self._on_link_lost(address)

	def _on_link_lost(self, address: str) -> None:
		"""The sensor dropped a link we did not ask to close."""
		if self._states.get(address) != ConnectionState.CONNECTED:
			return
		self._sessions.pop(address, None)
		self._states[address] = ConnectionState.DISCONNECTED
		logger.warning("Connection to %s was lost", address)
		self._journal("disconnect", address, status="lost")
		self._emit("device_disconnected", address)

	def _drop(self, address: str, session: Any) -> None:
		if self._sessions.get(address) is session:
			self._sessions.pop(address, None)
			self._states[address] = ConnectionState.DISCONNECTED

	# ------------------------------------------------------------------
	# Broadcasts
	# ------------------------------------------------------------------
	def start_broadcast_listener(
		self,
		device_ids: Optional[Iterable[str]] = None,
		on_next: Optional[BroadcastHandler] = None,
		on_error: Optional[ErrorHandler] = None,
		on_complete: Optional[CompleteHandler] = None,
		*,
		duration: Optional[float] = None,
	) -> BroadcastSubscription:
		"""Listen for heart-rate advertisements; ``device_ids=None`` accepts every sensor."""
		scanner_kwargs: Dict[str, Any] = {}
		if self.adapter:
			scanner_kwargs["adapter"] = self.adapter
		subscription = BroadcastSubscription(
			device_ids=device_ids,
			on_next=on_next,
			on_error=on_error,
			on_complete=on_complete,
			scanner_factory=self._scanner_factory,
			scanner_kwargs=scanner_kwargs,
			duration=duration,
		)
		self._listeners.add(subscription)
		subscription.add_done_listener(self._listeners.discard)
		subscription._attach(self._spawn(subscription._run()))
		return subscription

	async def shutdown(self) -> None:
		for subscription in list(self._listeners):
			subscription.dispose()
		for pending in list(self._pending.values()):
			pending.cancel()
		self._pending.clear()
		sessions, self._sessions = dict(self._sessions), {}
		for address, session in sessions.items():
			with contextlib.suppress(Exception):
				await session.disconnect()
			self._states[address] = ConnectionState.DISCONNECTED

	# ------------------------------------------------------------------
	# Helpers
	# ------------------------------------------------------------------
	def _spawn(self, coro: Any) -> Pending:
		try:
			running = asyncio.get_running_loop()
		except RuntimeError:
			running = None
		if running is not None:
			if self._loop is None:
				self._loop = running
			return running.create_task(coro)
		if self._loop is not None and self._loop.is_running():
			return asyncio.run_coroutine_threadsafe(coro, self._loop)
		coro.close()
		raise RuntimeError("PeripheralClient requires a running event loop")

	def _emit(self, hook: str, *args: Any) -> None:
		try:
			getattr(self.callback, hook)(*args)
		except Exception:
			logger.exception("Peripheral callback %s raised", hook)

	def _journal(self, event: str, address: str, **kwargs: Any) -> None:
		if not self.metrics:
			return
		try:
			self.metrics.log(event, address=address, **kwargs)
		except Exception:  # pragma: no cover - logging must not break the client
			logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = [
	"BroadcastSubscription",
	"DeviceSession",
	"FEATURE_HR",
	"HEART_RATE_SERVICE",
	"PeripheralCallback",
	"PeripheralClient",
	"SessionConfig",
	"validate_address",
]
