"""Tests for the keyed notification presenter and trays."""
import io

import pytest
from rich.console import Console

from hrcompanion.models import NotificationChannel, NotificationRecord, notification_key
from hrcompanion.notifications import CDM_CHANNEL, ConsoleTray, MemoryTray, NotificationPresenter


def test_notification_key_matches_string_hash_semantics():
    assert notification_key("") == 0
    assert notification_key("abc") == 96354
    assert notification_key("A0:9E:1A:00:11:22") == notification_key("A0:9E:1A:00:11:22")
    assert -(2 ** 31) <= notification_key("A0:9E:1A:00:11:22") < 2 ** 31
    # wraps to a negative signed 32-bit value
    assert notification_key("polygenelubricants") == -(2 ** 31)


def test_notification_key_differs_between_addresses():
    assert notification_key("A0:9E:1A:00:11:22") != notification_key("A0:9E:1A:00:11:23")


def test_present_updates_the_same_record():
    tray = MemoryTray()
    presenter = NotificationPresenter(tray)

    first = presenter.present("A0:9E:1A:00:11:22", "appeared", "connected")
    second = presenter.present("A0:9E:1A:00:11:22", "disappeared")

    assert first.key == second.key
    assert list(tray.active()) == [first.key]
    assert tray.active()[first.key].body == "Device: A0:9E:1A:00:11:22 disappeared"
    assert first.body == "Device: A0:9E:1A:00:11:22 appeared.\nStatus: connected"


def test_both_disappearance_paths_render_the_same_body():
    tray = MemoryTray()
    presenter = NotificationPresenter(tray)

    direct = presenter.present("A0:9E:1A:00:11:22", "disappeared")
    hook = presenter.on_device_disappeared("A0:9E:1A:00:11:22")

    assert direct.body == hook.body == "Device: A0:9E:1A:00:11:22 disappeared"


def test_each_address_gets_its_own_record():
    tray = MemoryTray()
    presenter = NotificationPresenter(tray)

    presenter.on_device_appeared("A0:9E:1A:00:11:22", "connected")
    presenter.on_device_appeared("A0:9E:1A:00:11:33", "connected")

    assert len(tray.active()) == 2


def test_channel_created_once_before_first_post():
    tray = MemoryTray()
    presenter = NotificationPresenter(tray)
    assert CDM_CHANNEL in tray.channels

    presenter.on_device_appeared("A0:9E:1A:00:11:22", "connected")
    presenter.on_device_disappeared("A0:9E:1A:00:11:22")
    NotificationPresenter(tray)

    assert list(tray.channels) == [CDM_CHANNEL]


def test_memory_tray_rejects_unknown_channel():
    tray = MemoryTray()
    with pytest.raises(LookupError):
        tray.notify(NotificationRecord(key=1, channel_id="missing", title="t", body="b"))


def test_memory_tray_cancel_removes_record():
    tray = MemoryTray()
    tray.create_channel(NotificationChannel(id="c", name="c"))
    tray.notify(NotificationRecord(key=7, channel_id="c", title="t", body="b"))
    tray.cancel(7)
    tray.cancel(7)
    assert tray.active() == {}


def test_console_tray_renders_posts_and_updates():
    buffer = io.StringIO()
    tray = ConsoleTray(Console(file=buffer, width=100, force_terminal=False))
    presenter = NotificationPresenter(tray, title="Companion")

    presenter.on_device_appeared("A0:9E:1A:00:11:22", "connected")
    presenter.on_device_disappeared("A0:9E:1A:00:11:22")

    output = buffer.getvalue()
    assert "Companion" in output
    assert "appeared" in output
    assert "disappeared" in output
    assert "updated" in output
    assert len(tray.active()) == 1
