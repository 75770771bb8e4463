"""Tests for configuration loading, the association store and the event journal."""
from __future__ import annotations

import csv
import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from hrcompanion.associations import AssociationStore
from hrcompanion.config import CompanionConfig, load_config
from hrcompanion.errors import InvalidDeviceAddress
from hrcompanion.metrics import MetricsLogger
from hrcompanion.permissions import BLUETOOTH_CONNECT, POST_NOTIFICATIONS, PermissionGate, StaticPermissionChecker
from hrcompanion.platform import S, TIRAMISU, PlatformInfo


class ConfigTest(unittest.TestCase):
    def test_defaults(self) -> None:
        config = load_config(environ={})
        self.assertEqual(config.api_level, TIRAMISU)
        self.assertEqual(config.granted_permissions, (BLUETOOTH_CONNECT, POST_NOTIFICATIONS))
        self.assertIsNone(config.metrics_path)

    def test_file_then_environment_overrides(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "config.json")
            path.write_text(
                json.dumps({
                    "api_level": 31,
                    "granted_permissions": ["bluetooth_connect"],
                    "absence_timeout": 30,
                    "site": "lab-2",
                }),
                encoding="utf-8",
            )
            config = load_config(path, environ={
                "HRCOMPANION_ABSENCE_TIMEOUT": "5.5",
                "HRCOMPANION_CONSOLE_NOTIFICATIONS": "no",
            })

        self.assertEqual(config.api_level, 31)
        self.assertEqual(config.granted_permissions, (BLUETOOTH_CONNECT,))
        self.assertEqual(config.absence_timeout, 5.5)
        self.assertFalse(config.console_notifications)
        self.assertEqual(config.extra, {"site": "lab-2"})

    def test_invalid_json_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "config.json")
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ValueError):
                load_config(path, environ={})

    def test_overrides_skip_none_and_validate(self) -> None:
        config = CompanionConfig().with_overrides(adapter=None, connect_timeout=3.0)
        self.assertEqual(config.connect_timeout, 3.0)
        self.assertIsNone(config.adapter)
        with self.assertRaises(ValueError):
            CompanionConfig(absence_timeout=-1)


class PermissionGateTest(unittest.TestCase):
    def test_notification_permission_only_required_on_newer_platform(self) -> None:
        checker = StaticPermissionChecker([BLUETOOTH_CONNECT])
        self.assertFalse(PermissionGate(checker, PlatformInfo(api_level=S)).missing_permissions())
        gate = PermissionGate(checker, PlatformInfo(api_level=TIRAMISU))
        self.assertEqual(gate.missing(), (POST_NOTIFICATIONS,))
        checker.grant("post_notifications")
        self.assertFalse(gate.missing_permissions())

    def test_failing_checker_counts_as_denied(self) -> None:
        def broken(permission: str) -> bool:
            raise OSError("policy service unavailable")

        gate = PermissionGate(broken, PlatformInfo(api_level=S))
        with self.assertLogs("hrcompanion.permissions", level="ERROR"):
            self.assertEqual(gate.missing(), (BLUETOOTH_CONNECT,))


class AssociationStoreTest(unittest.TestCase):
    def test_persisted_ids_are_never_reused(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "assoc", "associations.json")
            store = AssociationStore(path)
            first = store.associate("a0:9e:1a:00:11:22", display_name="Chest strap")
            again = store.associate("A0:9E:1A:00:11:22")
            second = store.associate("A0:9E:1A:00:11:33")
            self.assertIs(again, first)
            self.assertEqual((first.id, second.id), (1, 2))
            self.assertTrue(store.disassociate(second.id))
            self.assertFalse(store.disassociate(second.id))

            reloaded = AssociationStore(path)
            third = reloaded.associate("A0:9E:1A:00:11:44")

        self.assertEqual([info.id for info in reloaded.all()], [1, 3])
        self.assertEqual(third.id, 3)
        self.assertEqual(reloaded.get(1).display_name, "Chest strap")
        self.assertEqual(reloaded.addresses(), ["A0:9E:1A:00:11:22", "A0:9E:1A:00:11:44"])

    def test_rejects_invalid_address(self) -> None:
        with self.assertRaises(InvalidDeviceAddress):
            AssociationStore().associate("H10")


class MetricsLoggerTest(unittest.TestCase):
    def test_rows_carry_static_scope_and_call_extras(self) -> None:
        fixed = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "events.csv")
            metrics = MetricsLogger(path, static_extra={"site": "lab"}, clock=lambda: fixed)
            with metrics.scope(session="s1"):
                metrics.log("appeared", address="A0:9E:1A:00:11:22", status="associated")
            metrics.log("hr_broadcast", value=72.0, extra={"device_id": "1A2B3C4D"})

            with path.open("r", encoding="utf-8", newline="") as handle:
                rows = list(csv.DictReader(handle))

        self.assertEqual(rows[0]["timestamp"], "2026-01-02T03:04:05.000+00:00")
        self.assertEqual(rows[0]["address"], "A0:9E:1A:00:11:22")
        self.assertEqual(json.loads(rows[0]["extra"]), {"site": "lab", "session": "s1"})
        self.assertEqual(json.loads(rows[1]["extra"]), {"site": "lab", "device_id": "1A2B3C4D"})
        self.assertEqual(float(rows[1]["value"]), 72.0)

    def test_requires_event_column(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ValueError):
                MetricsLogger(Path(tmp, "x.csv"), fields=("timestamp",))


if __name__ == "__main__":
    unittest.main()
