"""Per-printer connection state machine and live status polling.

A :class:`PrinterConnectionManager` owns one printer's polling loop::

    disconnected --> connecting --> connected
                          ^    \\--> error(message)
                          |              |
                          +--- next tick +

There is no terminal state; the loop runs until :meth:`stop_monitoring`
or the caller's stop event.  Each poll dispatches on the printer's
protocol tag, then overwrites that printer's :class:`LiveStatus` in a
shared :class:`LiveStatusStore` wholesale.

A failed poll keeps the previous field values (one dropped packet should
not blank the UI) but marks the snapshot unreachable; the ``status_text``
style accessors return ``"unknown"``/``None`` in that case, so stale
values are never presented as current.

Only one poll per printer is ever in flight.  A manual :meth:`refresh`
during a scheduled poll waits for that poll and shares its result.
"""

from __future__ import annotations

import concurrent.futures
import copy
import enum
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from printerlink.events import Event, EventBus, EventType
from printerlink.printers.base import (
    ActStatus,
    ActStatusReport,
    PrinterError,
    PrinterProtocol,
    PrinterRecord,
    TemperatureReading,
    UnreachableError,
)
from printerlink.printers.dispatch import PrinterDispatcher, StatusResult

logger = logging.getLogger(__name__)

_DEFAULT_POLL_INTERVAL = 5.0
_MILESTONES = (25, 50, 75, 100)

_UNKNOWN = "unknown"

# LiveStatus fields that come from the printer and go stale when it drops off.
_PRINTER_FIELDS = (
    "act_status",
    "raw_status",
    "current_layer",
    "total_layers",
    "job_state",
    "bed_temperature",
    "tool_temperature",
    "file_name",
    "progress",
    "time_remaining",
    "completion_eta",
)


class ConnectionState(enum.Enum):
    """Connection state of one monitored printer."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Live status
# ---------------------------------------------------------------------------


@dataclass
class LiveStatus:
    """In-memory status snapshot for one printer.

    ``reachable`` is tri-state: ``None`` before the first poll completes,
    then ``True``/``False`` after each poll.  Read the accessor
    properties, not the raw fields, when showing status to a user.
    """

    printer_id: str
    protocol: PrinterProtocol
    reachable: bool | None = None
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    error_message: str | None = None

    # ACT printers
    act_status: ActStatus | None = None
    raw_status: str | None = None
    current_layer: int | None = None
    total_layers: int | None = None

    # HTTP printers
    job_state: str | None = None
    bed_temperature: TemperatureReading | None = None
    tool_temperature: TemperatureReading | None = None

    # Both
    file_name: str | None = None
    progress: float | None = None  # 0.0 -- 1.0
    time_remaining: int | None = None  # seconds
    completion_eta: float | None = None  # Unix timestamp

    last_updated: float | None = None
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    total_successes: int = 0
    total_failures: int = 0

    # -- accessors gated on reachability --------------------------------

    @property
    def is_current(self) -> bool:
        return self.reachable is True

    @property
    def status_text(self) -> str:
        """Protocol-neutral state label, or ``"unknown"`` when not current."""
        if not self.is_current:
            return _UNKNOWN
        if self.protocol is PrinterProtocol.ACT:
            if self.act_status is None or self.act_status is ActStatus.UNKNOWN:
                return (self.raw_status or _UNKNOWN).lower()
            return self.act_status.value
        return (self.job_state or _UNKNOWN).lower()

    @property
    def progress_fraction(self) -> float | None:
        return self.progress if self.is_current else None

    @property
    def remaining_seconds(self) -> int | None:
        return self.time_remaining if self.is_current else None

    @property
    def estimated_completion(self) -> float | None:
        return self.completion_eta if self.is_current else None

    @property
    def current_file_name(self) -> str | None:
        return self.file_name if self.is_current else None

    @property
    def display_state(self) -> str:
        """Short label for a printer card: checking, offline, or the status."""
        if self.reachable is None:
            return "checking"
        if self.reachable is False:
            return "offline"
        return self.status_text

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary of the gated view.

        Printer-reported fields are ``None`` unless the snapshot is current.
        """
        data = asdict(self)
        data["protocol"] = self.protocol.value
        data["connection_state"] = self.connection_state.value
        data["act_status"] = self.act_status.value if self.act_status else None
        if not self.is_current:
            for name in _PRINTER_FIELDS:
                data[name] = None
        data["status_text"] = self.status_text
        data["display_state"] = self.display_state
        return data


StatusListener = Callable[[LiveStatus], None]


class LiveStatusStore:
    """Thread-safe map of printer id to :class:`LiveStatus`.

    Each printer's entry is written only by that printer's manager.
    Readers always receive copies, so they never observe a half-written
    snapshot.
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, LiveStatus] = {}
        self._listeners: list[StatusListener] = []
        self._bus = event_bus

    def get(self, printer_id: str) -> LiveStatus | None:
        with self._lock:
            entry = self._entries.get(printer_id)
            return copy.deepcopy(entry) if entry is not None else None

    def snapshot_all(self) -> dict[str, LiveStatus]:
        with self._lock:
            return {pid: copy.deepcopy(s) for pid, s in self._entries.items()}

    def set(self, status: LiveStatus) -> None:
        stored = copy.deepcopy(status)
        with self._lock:
            self._entries[status.printer_id] = stored
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(copy.deepcopy(stored))
            except Exception:
                logger.exception("Status listener %r failed", listener)
        if self._bus is not None:
            self._bus.publish(EventType.STATUS_UPDATED, stored.to_dict(), source=f"printer:{status.printer_id}")

    def remove(self, printer_id: str) -> None:
        with self._lock:
            self._entries.pop(printer_id, None)

    def subscribe(self, listener: StatusListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: StatusListener) -> None:
        with self._lock:
            self._listeners = [cb for cb in self._listeners if cb is not listener]


# ---------------------------------------------------------------------------
# Print activity tracking
# ---------------------------------------------------------------------------


class _Activity(enum.Enum):
    IDLE = "idle"
    PRINTING = "printing"
    PAUSED = "paused"
    STOPPING = "stopping"
    FAULT = "fault"
    UNKNOWN = "unknown"


_ACT_ACTIVITY = {
    ActStatus.IDLE: _Activity.IDLE,
    ActStatus.PRINTING: _Activity.PRINTING,
    ActStatus.PAUSED: _Activity.PAUSED,
    ActStatus.STOPPING: _Activity.STOPPING,
    ActStatus.UNKNOWN: _Activity.UNKNOWN,
}

_ACTIVE = (_Activity.PRINTING, _Activity.PAUSED)


def _transition_event(previous: _Activity | None, current: _Activity) -> EventType | None:
    """Print lifecycle event implied by moving from *previous* to *current*."""
    if previous is None or previous is current:
        return None
    if current is _Activity.PRINTING:
        if previous is _Activity.PAUSED:
            return EventType.PRINT_RESUMED
        if previous in (_Activity.IDLE, _Activity.STOPPING):
            return EventType.PRINT_STARTED
        return None
    if previous not in _ACTIVE:
        return None
    if current is _Activity.PAUSED:
        return EventType.PRINT_PAUSED
    if current is _Activity.STOPPING:
        return EventType.PRINT_CANCELLED
    if current is _Activity.IDLE:
        return EventType.PRINT_COMPLETED if previous is _Activity.PRINTING else EventType.PRINT_CANCELLED
    if current is _Activity.FAULT:
        return EventType.PRINT_FAILED
    return None


@dataclass
class _Session:
    """One monitoring session; replaced on every start_monitoring()."""

    printer: PrinterRecord
    stop: threading.Event
    polled: threading.Event = field(default_factory=threading.Event)
    activity: _Activity | None = None
    milestones_sent: set[int] = field(default_factory=set)
    system_info_loaded: bool = False
    thread: threading.Thread | None = None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class PrinterConnectionManager:
    """Polls one printer and tracks its connection state.

    Args:
        dispatcher: Protocol router; a default one is built when omitted.
        store: Shared live status map; a private one is built when omitted.
        poll_interval: Seconds between scheduled polls.
        event_bus: Optional bus for connection and print lifecycle events.
        fetch_system_info: For ACT printers, query ``sysinfo`` once per
            session to fill model, firmware and serial on the record.
    """

    def __init__(
        self,
        dispatcher: PrinterDispatcher | None = None,
        store: LiveStatusStore | None = None,
        *,
        poll_interval: float = _DEFAULT_POLL_INTERVAL,
        event_bus: EventBus | None = None,
        fetch_system_info: bool = True,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._dispatcher = dispatcher or PrinterDispatcher()
        self._store = store or LiveStatusStore()
        self._interval = poll_interval
        self._bus = event_bus
        self._fetch_system_info = fetch_system_info

        self._session: _Session | None = None
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.RLock()
        self._poll_lock = threading.Lock()
        self._polling_thread: threading.Thread | None = None

    def __repr__(self) -> str:
        session = self._session
        name = session.printer.name if session else None
        return f"<PrinterConnectionManager printer={name!r} state={self._state.value}>"

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def store(self) -> LiveStatusStore:
        return self._store

    @property
    def printer(self) -> PrinterRecord | None:
        session = self._session
        return session.printer if session else None

    @property
    def status(self) -> LiveStatus | None:
        session = self._session
        if session is None:
            return None
        return self._store.get(session.printer.id)

    @property
    def is_monitoring(self) -> bool:
        session = self._session
        return session is not None and not session.stop.is_set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_monitoring(self, printer: PrinterRecord, stop_event: threading.Event | None = None) -> None:
        """Poll *printer* now, then every ``poll_interval`` seconds.

        Setting *stop_event* has the same effect as :meth:`stop_monitoring`.
        A session already running is stopped first.
        """
        self.stop_monitoring()
        session = _Session(printer=printer, stop=stop_event or threading.Event())
        with self._state_lock:
            self._session = session
            self._state = ConnectionState.DISCONNECTED
        session.thread = threading.Thread(
            target=self._run,
            args=(session,),
            name=f"printerlink-poll-{printer.name}",
            daemon=True,
        )
        logger.info("Monitoring %s (%s) every %.1fs", printer.name, printer.ip_address, self._interval)
        session.thread.start()

    def stop_monitoring(self) -> None:
        """Stop polling and discard this printer's live status.

        Once this returns, no in-flight poll of the stopped session can
        change state, even if its network call completes later.
        """
        with self._state_lock:
            session = self._session
            if session is None:
                return
            session.stop.set()
            self._session = None
        self._store.remove(session.printer.id)
        logger.info("Stopped monitoring %s", session.printer.name)

    def wait_for_first_poll(self, timeout: float | None = None) -> bool:
        """Block until the current session's first poll has finished."""
        session = self._session
        if session is None:
            return False
        return session.polled.wait(timeout)

    def _run(self, session: _Session) -> None:
        self._poll_exclusive(session)
        while not session.stop.wait(self._interval):
            self._poll_exclusive(session)
        logger.debug("Poll loop for %s exited", session.printer.name)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def refresh(self, force: bool = False) -> LiveStatus | None:
        """Poll immediately without disturbing the tick schedule.

        If a poll is already in flight the call waits for it and returns
        its result; with *force* it then polls once more, so the result
        reflects anything that happened after the call.
        """
        session = self._session
        if session is None or session.stop.is_set():
            return None

        if self._poll_lock.acquire(blocking=False):
            try:
                self._poll(session)
            finally:
                self._poll_lock.release()
            return self.status

        if self._polling_thread is threading.current_thread():
            # Called from a status listener inside the running poll.
            return self.status

        with self._poll_lock:
            if force:
                self._poll(session)
        return self.status

    def _poll_exclusive(self, session: _Session) -> None:
        with self._poll_lock:
            self._poll(session)

    def _poll(self, session: _Session) -> None:
        if session.stop.is_set():
            return
        self._polling_thread = threading.current_thread()
        try:
            self._enter_connecting(session)
            try:
                result = self._dispatcher.get_status(session.printer)
            except PrinterError as exc:
                self._record_failure(session, exc)
            else:
                self._record_success(session, result)
                self._load_system_info(session)
        finally:
            self._polling_thread = None
            session.polled.set()

    def _is_current(self, session: _Session) -> bool:
        return session is self._session and not session.stop.is_set()

    def _enter_connecting(self, session: _Session) -> None:
        with self._state_lock:
            if not self._is_current(session):
                return
            self._state = ConnectionState.CONNECTING
            snapshot = self._store.get(session.printer.id) or LiveStatus(
                printer_id=session.printer.id,
                protocol=session.printer.protocol,
            )
            snapshot.connection_state = ConnectionState.CONNECTING
            self._store.set(snapshot)

    def _record_success(self, session: _Session, result: StatusResult) -> None:
        printer = session.printer
        now = time.time()
        events: list[Event] = []

        with self._state_lock:
            if not self._is_current(session):
                logger.debug("Discarding poll result for stopped session of %s", printer.name)
                return
            previous = self._store.get(printer.id)
            was_connected = previous is not None and previous.reachable is True

            snapshot, activity = _snapshot_from(printer, result, now)
            snapshot.consecutive_successes = (previous.consecutive_successes if previous else 0) + 1
            snapshot.consecutive_failures = 0
            snapshot.total_successes = (previous.total_successes if previous else 0) + 1
            snapshot.total_failures = previous.total_failures if previous else 0

            self._state = ConnectionState.CONNECTED
            printer.is_reachable = True
            printer.last_connected = now
            self._store.set(snapshot)

            source = f"printer:{printer.name}"
            if not was_connected:
                events.append(Event(EventType.PRINTER_CONNECTED, {"printer_name": printer.name}, source=source))
            events.extend(self._lifecycle_events(session, activity, snapshot, source))
            session.activity = activity

        self._publish(session, events)

    def _record_failure(self, session: _Session, exc: PrinterError) -> None:
        printer = session.printer
        unreachable = isinstance(exc, UnreachableError)
        new_state = ConnectionState.DISCONNECTED if unreachable else ConnectionState.ERROR
        events: list[Event] = []

        with self._state_lock:
            if not self._is_current(session):
                logger.debug("Discarding poll failure for stopped session of %s", printer.name)
                return
            previous = self._store.get(printer.id)
            snapshot = previous or LiveStatus(printer_id=printer.id, protocol=printer.protocol)
            snapshot = replace(
                snapshot,
                reachable=False,
                connection_state=new_state,
                error_message=str(exc),
                consecutive_successes=0,
                consecutive_failures=snapshot.consecutive_failures + 1,
                total_failures=snapshot.total_failures + 1,
            )
            old_state = ConnectionState.CONNECTED if previous and previous.reachable else None

            self._state = new_state
            printer.is_reachable = False
            self._store.set(snapshot)

            if snapshot.consecutive_failures == 1:
                logger.warning("Poll of %s failed: %s", printer.name, exc)
            else:
                logger.debug("Poll of %s failed (%d in a row): %s", printer.name, snapshot.consecutive_failures, exc)

            if snapshot.consecutive_failures == 1 or old_state is ConnectionState.CONNECTED:
                event_type = EventType.PRINTER_DISCONNECTED if unreachable else EventType.PRINTER_ERROR
                events.append(
                    Event(
                        event_type,
                        {"printer_name": printer.name, "error": str(exc)},
                        source=f"printer:{printer.name}",
                    )
                )

        self._publish(session, events)

    def _lifecycle_events(
        self,
        session: _Session,
        activity: _Activity,
        snapshot: LiveStatus,
        source: str,
    ) -> list[Event]:
        events: list[Event] = []
        data = {"printer_name": session.printer.name, "file_name": snapshot.file_name}

        transition = _transition_event(session.activity, activity)
        if transition is not None:
            logger.info("%s: %s", session.printer.name, transition.value)
            events.append(Event(transition, dict(data), source=source))
            if transition is EventType.PRINT_STARTED:
                session.milestones_sent.clear()

        if snapshot.progress is not None and activity in _ACTIVE:
            percent = snapshot.progress * 100.0
            reached = {m for m in _MILESTONES if percent >= m}
            if session.activity is None:
                # Monitoring began mid-print: do not replay earlier milestones.
                session.milestones_sent |= reached
            for milestone in sorted(reached - session.milestones_sent):
                session.milestones_sent.add(milestone)
                events.append(Event(EventType.PRINT_PROGRESS, {**data, "milestone": milestone}, source=source))
        return events

    def _publish(self, session: _Session, events: list[Event]) -> None:
        if self._bus is None or not events or not self._is_current(session):
            return
        for event in events:
            self._bus.publish(event)

    def _load_system_info(self, session: _Session) -> None:
        printer = session.printer
        if (
            not self._fetch_system_info
            or session.system_info_loaded
            or printer.protocol is not PrinterProtocol.ACT
            or not self._is_current(session)
        ):
            return
        try:
            info = self._dispatcher.act.get_system_info(printer.ip_address, printer.port)
        except PrinterError as exc:
            logger.debug("sysinfo from %s unavailable: %s", printer.name, exc)
            return
        with self._state_lock:
            if not self._is_current(session):
                return
            printer.model = info.model or printer.model
            printer.firmware_version = info.firmware_version or printer.firmware_version
            printer.serial_number = info.serial_number or printer.serial_number
            session.system_info_loaded = True

    # ------------------------------------------------------------------
    # Print control
    # ------------------------------------------------------------------

    def _require_printer(self) -> PrinterRecord:
        session = self._session
        if session is None:
            raise PrinterError("No printer is being monitored")
        return session.printer

    def start_print(self, filename: str) -> LiveStatus | None:
        """Start *filename*, then poll so the new state shows at once.

        Failures propagate unchanged and are never retried.
        """
        printer = self._require_printer()
        self._dispatcher.start_print(printer, filename)
        logger.info("Start of %s sent to %s", filename, printer.name)
        return self.refresh(force=True)

    def pause_print(self) -> LiveStatus | None:
        printer = self._require_printer()
        self._dispatcher.pause_print(printer)
        logger.info("Pause sent to %s", printer.name)
        return self.refresh(force=True)

    def resume_print(self) -> LiveStatus | None:
        printer = self._require_printer()
        self._dispatcher.resume_print(printer)
        logger.info("Resume sent to %s", printer.name)
        return self.refresh(force=True)

    def cancel_print(self) -> LiveStatus | None:
        printer = self._require_printer()
        self._dispatcher.cancel_print(printer)
        logger.info("Cancel sent to %s", printer.name)
        return self.refresh(force=True)


# ---------------------------------------------------------------------------
# Snapshot construction
# ---------------------------------------------------------------------------


def _http_activity(printer_flags: Any, state_text: str) -> _Activity:
    text = state_text.lower()
    if printer_flags.printing:
        return _Activity.PRINTING
    if printer_flags.paused:
        return _Activity.PAUSED
    if text.startswith("cancel"):
        return _Activity.STOPPING
    if "error" in text or "offline" in text:
        return _Activity.FAULT
    if printer_flags.operational:
        return _Activity.IDLE
    return _Activity.UNKNOWN


def _snapshot_from(printer: PrinterRecord, result: StatusResult, now: float) -> tuple[LiveStatus, _Activity]:
    """Build a fresh snapshot from one successful poll."""
    snapshot = LiveStatus(
        printer_id=printer.id,
        protocol=printer.protocol,
        reachable=True,
        connection_state=ConnectionState.CONNECTED,
        last_updated=now,
    )

    if isinstance(result, ActStatusReport):
        snapshot.act_status = result.status
        snapshot.raw_status = result.raw_status
        snapshot.file_name = result.file_name
        snapshot.current_layer = result.current_layer
        snapshot.total_layers = result.total_layers
        if result.current_layer is not None and result.total_layers:
            snapshot.progress = result.current_layer / result.total_layers
        return snapshot, _ACT_ACTIVITY[result.status]

    printer_status, job = result
    snapshot.job_state = job.state if job.state != "Unknown" else printer_status.state_text
    snapshot.bed_temperature = printer_status.bed
    snapshot.tool_temperature = printer_status.tool
    snapshot.file_name = job.file_name
    snapshot.progress = job.progress_fraction
    snapshot.time_remaining = job.remaining_seconds
    if job.remaining_seconds is not None:
        snapshot.completion_eta = now + job.remaining_seconds
    return snapshot, _http_activity(printer_status, snapshot.job_state)


def refresh_all(
    managers: Iterable[PrinterConnectionManager],
    *,
    max_workers: int | None = None,
) -> dict[str, LiveStatus | None]:
    """Refresh many printers concurrently, one worker per printer.

    A slow or offline printer never delays another's result.  Returns a
    map of printer id to the refreshed status.
    """
    targets = [m for m in managers if m.printer is not None]
    if not targets:
        return {}
    results: dict[str, LiveStatus | None] = {}
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=max_workers or len(targets),
        thread_name_prefix="printerlink-refresh",
    ) as pool:
        futures = {pool.submit(m.refresh): m for m in targets}
        for future in concurrent.futures.as_completed(futures):
            manager = futures[future]
            printer = manager.printer
            if printer is not None:
                results[printer.id] = future.result()
    return results
