"""Integration-style tests for the FastAPI layer using fakes."""
from __future__ import annotations

import unittest
from typing import Any, List, Tuple

from fastapi.testclient import TestClient

import hrcompanion.api as api_module
from hrcompanion.associations import AssociationStore
from hrcompanion.config import CompanionConfig
from hrcompanion.models import ConnectionState, notification_key
from hrcompanion.notifications import MemoryTray
from hrcompanion.permissions import BLUETOOTH_CONNECT, POST_NOTIFICATIONS, PermissionGate, StaticPermissionChecker
from hrcompanion.platform import PlatformInfo
from hrcompanion.service import CompanionService

ADDRESS = "A0:9E:1A:00:11:22"


class _FakeSubscription:
    def __init__(self) -> None:
        self.is_disposed = False

    def dispose(self) -> None:
        self.is_disposed = True


class _FakePeripheral:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.shutdowns = 0

    def connect(self, address: str) -> None:
        self.calls.append(("connect", address))

    def disconnect(self, address: str) -> None:
        self.calls.append(("disconnect", address))

    def connection_state(self, address: str) -> ConnectionState:
        return ConnectionState.DISCONNECTED

    def start_broadcast_listener(self, *args: Any, **kwargs: Any) -> _FakeSubscription:
        return _FakeSubscription()

    async def shutdown(self) -> None:
        self.shutdowns += 1


class _IdleScanner:
    def __init__(self, detection_callback=None, **kwargs: Any) -> None:
        self._callback = detection_callback

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class ApiSimulationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.peripheral = _FakePeripheral()
        self.tray = MemoryTray()
        platform = PlatformInfo()
        self.service = CompanionService(
            config=CompanionConfig(associations_path=None, console_notifications=False, tick_interval=0.01),
            tray=self.tray,
            store=AssociationStore(),
            peripheral=self.peripheral,
            permissions=PermissionGate(StaticPermissionChecker([BLUETOOTH_CONNECT, POST_NOTIFICATIONS]), platform),
            scanner_factory=_IdleScanner,
        )
        api_module.configure(self.service)

    def tearDown(self) -> None:
        api_module.configure(None)

    def test_health_endpoint_returns_ok(self) -> None:
        with TestClient(api_module.app) as client:
            response = client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertIn("time", response.json())

    def test_association_crud(self) -> None:
        with TestClient(api_module.app) as client:
            created = client.post("/associations", params={"address": ADDRESS.lower(), "name": "Chest strap"})
            listed = client.get("/associations")
            bad = client.post("/associations", params={"address": "H10"})
            removed = client.delete(f"/associations/{created.json()['id']}")
            missing = client.delete("/associations/99")

        self.assertEqual(created.status_code, 200)
        self.assertEqual(created.json()["device_mac_address"], ADDRESS)
        self.assertEqual([item["display_name"] for item in listed.json()], ["Chest strap"])
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(removed.json(), {"status": "removed", "id": 1})
        self.assertEqual(missing.status_code, 404)

    def test_presence_events_drive_observer_and_notifications(self) -> None:
        self.service.store.associate(ADDRESS)
        with TestClient(api_module.app) as client:
            appeared = client.post("/presence/appeared", params={"address": ADDRESS})
            after_appear = client.get("/notifications").json()
            disappeared = client.post("/presence/disappeared", params={"address": ADDRESS})
            after_disappear = client.get("/notifications").json()

        self.assertEqual(appeared.json(), {"status": "dispatched", "event": "appeared"})
        self.assertEqual(disappeared.status_code, 200)
        self.assertEqual(self.peripheral.calls, [("connect", ADDRESS), ("disconnect", ADDRESS)])
        self.assertEqual(len(after_appear), 1)
        self.assertEqual(after_appear[0]["key"], notification_key(ADDRESS))
        self.assertIn("appeared", after_appear[0]["body"])
        self.assertEqual(after_disappear[0]["key"], after_appear[0]["key"])
        self.assertEqual(after_disappear[0]["body"], f"Device: {ADDRESS} disappeared")

    def test_presence_for_unknown_or_invalid_address(self) -> None:
        with TestClient(api_module.app) as client:
            unknown = client.post("/presence/appeared", params={"address": ADDRESS})
            invalid = client.post("/presence/disappeared", params={"address": "nope"})
        self.assertEqual(unknown.status_code, 404)
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(self.peripheral.calls, [])

    def test_monitor_start_status_stop(self) -> None:
        with TestClient(api_module.app) as client:
            idle = client.get("/monitor/status").json()
            started = client.post("/monitor/start").json()
            running = client.get("/monitor/status").json()
            again = client.post("/monitor/start").json()
            stopped = client.post("/monitor/stop").json()
            after = client.post("/monitor/stop").json()

        self.assertEqual(idle, {"status": "idle"})
        self.assertEqual(started["status"], "started")
        self.assertEqual(running, {"status": "running", "present": []})
        self.assertEqual(again, {"status": "already-running"})
        self.assertEqual(stopped, {"status": "stopped"})
        self.assertEqual(after, {"status": "idle"})
        self.assertEqual(self.peripheral.shutdowns, 1)


if __name__ == "__main__":
    unittest.main()
