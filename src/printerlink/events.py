"""Event system -- publish/subscribe for printer lifecycle events.

The connection manager, discovery and the reachability monitor publish
here; UI layers, notification senders and the CLI subscribe.  Handlers
run synchronously in the publishing thread, which for poll and sweep
events is a worker thread, so handlers must not block.

Example::

    bus = EventBus()

    def on_done(event: Event) -> None:
        print(f"Print finished on {event.data['printer_name']}")

    bus.subscribe(EventType.PRINT_COMPLETED, on_done)
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from printerlink import parse_int_env

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    """All event types emitted by printerlink."""

    # Connection state
    PRINTER_CONNECTED = "printer.connected"
    PRINTER_DISCONNECTED = "printer.disconnected"
    PRINTER_ERROR = "printer.error"
    STATUS_UPDATED = "printer.status_updated"

    # Print lifecycle
    PRINT_STARTED = "print.started"
    PRINT_PAUSED = "print.paused"
    PRINT_RESUMED = "print.resumed"
    PRINT_COMPLETED = "print.completed"
    PRINT_CANCELLED = "print.cancelled"
    PRINT_FAILED = "print.failed"
    PRINT_PROGRESS = "print.progress"

    # File transfer
    FILE_UPLOADED = "file.uploaded"

    # Discovery
    PRINTER_DISCOVERED = "discovery.found"
    SCAN_PROGRESS = "discovery.progress"
    SCAN_FAILED = "discovery.failed"

    # Host network
    NETWORK_CHANGED = "network.changed"


@dataclass
class Event:
    """A single event in the system."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    source: str = ""  # e.g. "printer:photon-1" or "discovery"

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "source": self.source,
        }


EventHandler = Callable[[Event], None]
EventFilter = Callable[[Event], bool]

_DEFAULT_HISTORY = 500


class EventBus:
    """Thread-safe publish/subscribe event bus.

    If a handler raises, the exception is logged and the remaining
    handlers still run.  Subscribers may pass a *filter* predicate that
    is evaluated before their handler is called.

    History length defaults to 500 and is configurable through the
    ``PRINTERLINK_EVENT_HISTORY`` environment variable.
    """

    def __init__(self, *, max_history: int | None = None) -> None:
        self._handlers: dict[EventType, list[tuple[EventHandler, EventFilter | None]]] = {}
        self._wildcard_handlers: list[tuple[EventHandler, EventFilter | None]] = []
        self._lock = threading.Lock()
        self._history: list[Event] = []
        self._max_history: int = (
            max_history
            if max_history is not None
            else parse_int_env("PRINTERLINK_EVENT_HISTORY", _DEFAULT_HISTORY)
        )

    def subscribe(
        self,
        event_type: EventType | None,
        handler: EventHandler,
        *,
        filter: EventFilter | None = None,
    ) -> None:
        """Register a handler for a specific event type.

        :param event_type: The event type to listen for, or ``None`` to
            receive every event.
        :param handler: Callable that accepts an :class:`Event`.
        :param filter: Optional predicate; the handler only runs when it
            returns ``True``.
        """
        with self._lock:
            if event_type is None:
                entries = self._wildcard_handlers
            else:
                entries = self._handlers.setdefault(event_type, [])
            if any(existing is handler for existing, _ in entries):
                logger.debug("Duplicate subscription for %s, skipping", event_type)
                return
            entries.append((handler, filter))

    def unsubscribe(
        self,
        event_type: EventType | None,
        handler: EventHandler,
    ) -> None:
        """Remove a previously registered handler.

        Silently does nothing if the handler is not found.
        """
        with self._lock:
            if event_type is None:
                self._wildcard_handlers = [(h, f) for h, f in self._wildcard_handlers if h is not handler]
            else:
                entries = self._handlers.get(event_type, [])
                self._handlers[event_type] = [(h, f) for h, f in entries if h is not handler]

    def publish(
        self,
        event_or_type: Event | EventType,
        data: dict[str, Any] | None = None,
        source: str = "",
    ) -> Event:
        """Dispatch an event to all matching handlers.

        Accepts either a pre-built :class:`Event` or an :class:`EventType`
        plus data and source.  Returns the dispatched event.
        """
        if isinstance(event_or_type, EventType):
            event = Event(type=event_or_type, data=data or {}, source=source)
        else:
            event = event_or_type

        with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history :]
            targets = list(self._handlers.get(event.type, [])) + list(self._wildcard_handlers)

        # Handlers run outside the lock so they may publish in turn.
        for handler, filt in targets:
            try:
                if filt is not None and not filt(event):
                    continue
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler %r failed for %s",
                    handler,
                    event.type.value,
                )
        return event

    def recent_events(
        self,
        event_type: EventType | None = None,
        limit: int = 50,
    ) -> list[Event]:
        """Return recent events, newest first."""
        with self._lock:
            events = list(self._history)

        if event_type is not None:
            events = [e for e in events if e.type == event_type]

        events.reverse()
        return events[:limit]

    def clear_history(self) -> None:
        """Clear the event history buffer."""
        with self._lock:
            self._history.clear()
