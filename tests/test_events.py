"""Tests for printerlink.events -- publish/subscribe event bus.

Covers:
- EventType values
- Event.to_dict
- Subscribe/unsubscribe, wildcard subscriptions and filters
- Handler failures do not stop delivery
- History length and ordering
- Thread safety
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from printerlink.events import Event, EventBus, EventType


class TestEventType:
    """Tests for the EventType enum."""

    def test_print_lifecycle_values(self):
        assert EventType.PRINT_STARTED.value == "print.started"
        assert EventType.PRINT_COMPLETED.value == "print.completed"
        assert EventType.PRINT_PROGRESS.value == "print.progress"

    def test_discovery_and_network_values(self):
        assert EventType.PRINTER_DISCOVERED.value == "discovery.found"
        assert EventType.SCAN_PROGRESS.value == "discovery.progress"
        assert EventType.NETWORK_CHANGED.value == "network.changed"

    def test_from_value(self):
        assert EventType("printer.connected") is EventType.PRINTER_CONNECTED

    def test_invalid_value(self):
        with pytest.raises(ValueError):
            EventType("nonexistent.event")


class TestEvent:
    """Tests for the Event dataclass."""

    def test_to_dict(self):
        event = Event(
            type=EventType.PRINTER_DISCOVERED,
            data={"ip_address": "192.168.1.50"},
            timestamp=1000.0,
            source="discovery",
        )
        assert event.to_dict() == {
            "type": "discovery.found",
            "data": {"ip_address": "192.168.1.50"},
            "timestamp": 1000.0,
            "source": "discovery",
        }

    def test_defaults(self):
        event = Event(type=EventType.PRINT_STARTED)
        assert event.data == {}
        assert event.source == ""
        assert isinstance(event.timestamp, float)


class TestSubscribe:
    """Subscribe, unsubscribe and delivery."""

    def test_handler_called(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(EventType.PRINT_STARTED, handler)
        event = bus.publish(EventType.PRINT_STARTED, {"printer_name": "photon"}, source="printer:photon")
        handler.assert_called_once_with(event)
        assert event.data["printer_name"] == "photon"

    def test_other_types_not_delivered(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(EventType.PRINT_STARTED, handler)
        bus.publish(EventType.PRINT_PAUSED)
        handler.assert_not_called()

    def test_wildcard(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(None, handler)
        bus.publish(EventType.PRINT_STARTED)
        bus.publish(EventType.NETWORK_CHANGED)
        assert handler.call_count == 2

    def test_duplicate_subscription_ignored(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(EventType.PRINT_STARTED, handler)
        bus.subscribe(EventType.PRINT_STARTED, handler)
        bus.publish(EventType.PRINT_STARTED)
        handler.assert_called_once()

    def test_unsubscribe(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(EventType.PRINT_STARTED, handler)
        bus.unsubscribe(EventType.PRINT_STARTED, handler)
        bus.publish(EventType.PRINT_STARTED)
        handler.assert_not_called()

    def test_unsubscribe_unknown_is_noop(self):
        EventBus().unsubscribe(EventType.PRINT_STARTED, MagicMock())

    def test_filter(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(
            EventType.PRINT_PROGRESS,
            handler,
            filter=lambda e: e.data.get("milestone") == 100,
        )
        bus.publish(EventType.PRINT_PROGRESS, {"milestone": 50})
        bus.publish(EventType.PRINT_PROGRESS, {"milestone": 100})
        handler.assert_called_once()

    def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        broken = MagicMock(side_effect=RuntimeError("boom"))
        healthy = MagicMock()
        bus.subscribe(EventType.PRINTER_ERROR, broken)
        bus.subscribe(EventType.PRINTER_ERROR, healthy)
        bus.publish(EventType.PRINTER_ERROR)
        healthy.assert_called_once()

    def test_publish_prebuilt_event(self):
        bus = EventBus()
        event = Event(type=EventType.FILE_UPLOADED, data={"file_name": "part.gcode"})
        assert bus.publish(event) is event


class TestHistory:
    """recent_events and history bounds."""

    def test_newest_first(self):
        bus = EventBus()
        bus.publish(EventType.PRINT_STARTED)
        bus.publish(EventType.PRINT_COMPLETED)
        types = [e.type for e in bus.recent_events()]
        assert types == [EventType.PRINT_COMPLETED, EventType.PRINT_STARTED]

    def test_filter_by_type_and_limit(self):
        bus = EventBus()
        for _ in range(5):
            bus.publish(EventType.SCAN_PROGRESS)
        bus.publish(EventType.SCAN_FAILED)
        assert len(bus.recent_events(EventType.SCAN_PROGRESS, limit=3)) == 3
        assert len(bus.recent_events(EventType.SCAN_FAILED)) == 1

    def test_max_history(self):
        bus = EventBus(max_history=3)
        for _ in range(10):
            bus.publish(EventType.SCAN_PROGRESS)
        assert len(bus.recent_events(limit=100)) == 3

    def test_history_from_env(self, monkeypatch):
        monkeypatch.setenv("PRINTERLINK_EVENT_HISTORY", "2")
        bus = EventBus()
        for _ in range(5):
            bus.publish(EventType.SCAN_PROGRESS)
        assert len(bus.recent_events(limit=100)) == 2

    def test_clear_history(self):
        bus = EventBus()
        bus.publish(EventType.SCAN_PROGRESS)
        bus.clear_history()
        assert bus.recent_events() == []


class TestThreadSafety:
    """Concurrent publishing keeps every event."""

    def test_concurrent_publish(self):
        bus = EventBus(max_history=10_000)
        counter = MagicMock()
        bus.subscribe(EventType.SCAN_PROGRESS, counter)

        def worker():
            for _ in range(100):
                bus.publish(EventType.SCAN_PROGRESS)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(bus.recent_events(limit=10_000)) == 800
