"""Shared fixtures for the printerlink test suite.

Provides OctoPrint API payloads, a threaded mock ACT command server bound
to 127.0.0.1, and an autouse fixture that points the config file and log
directory at a temporary path so no test touches ``~/.printerlink``.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from collections.abc import Callable

import pytest

from printerlink.printers.base import PrinterRecord

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HTTP_PRINTER_IP = "192.168.1.60"
HTTP_API_KEY = "TESTAPIKEY123"
ACT_PRINTER_IP = "192.168.1.50"


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    """Keep config and logs inside the test's temporary directory."""
    monkeypatch.setenv("PRINTERLINK_CONFIG", str(tmp_path / "config" / "config.yaml"))
    monkeypatch.setenv("PRINTERLINK_LOG_DIR", str(tmp_path / "logs"))
    for name in (
        "PRINTERLINK_POLL_INTERVAL",
        "PRINTERLINK_ACT_TIMEOUT",
        "PRINTERLINK_HTTP_TIMEOUT",
        "PRINTERLINK_PROBE_TIMEOUT",
        "PRINTERLINK_SWEEP_WORKERS",
        "PRINTERLINK_PRINTER",
        "PRINTERLINK_LOG_LEVEL",
        "PRINTERLINK_EVENT_HISTORY",
    ):
        monkeypatch.delenv(name, raising=False)

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    # configure_logging() installs a rotating handler on the root logger.
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


# ---------------------------------------------------------------------------
# Mock ACT server
# ---------------------------------------------------------------------------


class MockActServer:
    """Threaded TCP server speaking the ACT request/reply shape.

    *replies* maps the first word of a command (``getstatus``,
    ``goprint`` ...) to the raw reply text, or is a callable taking the
    full command.  With ``respond=False`` the server accepts connections
    and reads the command but never answers.

    Counts connections opened and connections the client closed, so tests
    can check that every call closes its socket.
    """

    def __init__(
        self,
        replies: dict[str, str] | Callable[[str], str] | None = None,
        *,
        respond: bool = True,
    ) -> None:
        self._replies = replies or {}
        self._respond = respond
        self._lock = threading.Lock()
        self.received: list[str] = []
        self.connections_opened = 0
        self.connections_closed = 0

        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(32)
        self.port = self._sock.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _reply_for(self, command: str) -> str:
        if callable(self._replies):
            return self._replies(command)
        return self._replies.get(command.split(",", 1)[0], "")

    def _serve(self) -> None:
        while True:
            try:
                conn, _ = self._sock.accept()
            except OSError:
                return
            with self._lock:
                self.connections_opened += 1
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket) -> None:
        with conn:
            buffer = b""
            try:
                while b"\n" not in buffer:
                    chunk = conn.recv(1024)
                    if not chunk:
                        break
                    buffer += chunk
                command = buffer.decode("utf-8").strip()
                with self._lock:
                    self.received.append(command)
                if self._respond and command:
                    conn.sendall(self._reply_for(command).encode("utf-8"))
                # Wait for the client to hang up.
                while conn.recv(1024):
                    pass
            except OSError:
                pass
        with self._lock:
            self.connections_closed += 1

    def wait_for_closed(self, count: int, timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if self.connections_closed >= count:
                    return True
            time.sleep(0.01)
        return False

    def close(self) -> None:
        self._sock.close()


@pytest.fixture()
def act_server():
    """Factory for :class:`MockActServer` instances, closed after the test."""
    servers: list[MockActServer] = []

    def _make(replies=None, *, respond: bool = True) -> MockActServer:
        server = MockActServer(replies, respond=respond)
        servers.append(server)
        return server

    yield _make
    for server in servers:
        server.close()


@pytest.fixture()
def closed_port() -> int:
    """A localhost port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


# ---------------------------------------------------------------------------
# Printer records
# ---------------------------------------------------------------------------


@pytest.fixture()
def act_printer() -> PrinterRecord:
    return PrinterRecord(id="act-1", name="photon", ip_address=ACT_PRINTER_IP, protocol="act")


@pytest.fixture()
def http_printer() -> PrinterRecord:
    return PrinterRecord(
        id="http-1",
        name="voron",
        ip_address=HTTP_PRINTER_IP,
        protocol="httpREST",
        api_key=HTTP_API_KEY,
    )


# ---------------------------------------------------------------------------
# OctoPrint API response payloads
# ---------------------------------------------------------------------------


@pytest.fixture()
def printer_state_idle():
    """/api/printer response when idle and operational."""
    return {
        "temperature": {
            "tool0": {"actual": 24.5, "target": 0.0},
            "bed": {"actual": 23.1, "target": 0.0},
        },
        "state": {
            "text": "Operational",
            "flags": {
                "operational": True,
                "paused": False,
                "printing": False,
                "cancelling": False,
                "pausing": False,
                "error": False,
                "ready": True,
                "closedOrError": False,
            },
        },
    }


@pytest.fixture()
def printer_state_printing():
    """/api/printer response when actively printing."""
    return {
        "temperature": {
            "tool0": {"actual": 205.0, "target": 210.0},
            "bed": {"actual": 59.8, "target": 60.0},
        },
        "state": {
            "text": "Printing",
            "flags": {
                "operational": True,
                "paused": False,
                "printing": True,
                "cancelling": False,
                "pausing": False,
                "error": False,
                "ready": False,
                "closedOrError": False,
            },
        },
    }


@pytest.fixture()
def printer_state_paused():
    """/api/printer response when paused."""
    return {
        "temperature": {
            "tool0": {"actual": 200.0, "target": 210.0},
            "bed": {"actual": 58.0, "target": 60.0},
        },
        "state": {
            "text": "Paused",
            "flags": {
                "operational": True,
                "paused": True,
                "printing": False,
                "cancelling": False,
                "pausing": False,
                "error": False,
                "ready": False,
                "closedOrError": False,
            },
        },
    }


@pytest.fixture()
def job_response_printing():
    """/api/job response for an active print job."""
    return {
        "job": {
            "file": {"name": "benchy.gcode", "origin": "local", "size": 1234567},
            "estimatedPrintTime": 3600,
        },
        "progress": {
            "completion": 45.6789,
            "printTime": 1620,
            "printTimeLeft": 1980,
        },
        "state": "Printing",
    }


@pytest.fixture()
def job_response_idle():
    """/api/job response when no job is active."""
    return {
        "job": {"file": {"name": None, "origin": None, "size": None}},
        "progress": {"completion": None, "printTime": None, "printTimeLeft": None},
        "state": "Operational",
    }


@pytest.fixture()
def files_response_nested():
    """/api/files/local response with nested folders."""
    return {
        "files": [
            {
                "name": "benchy.gcode",
                "path": "benchy.gcode",
                "type": "machinecode",
                "size": 1234567,
                "date": 1700000000,
            },
            {
                "name": "calibration",
                "type": "folder",
                "children": [
                    {
                        "name": "first_layer.gcode",
                        "path": "calibration/first_layer.gcode",
                        "type": "machinecode",
                        "size": 99999,
                        "date": 1700002000,
                    },
                ],
            },
        ],
    }


@pytest.fixture()
def upload_response_success():
    """/api/files/local upload success response."""
    return {
        "files": {"local": {"name": "part.gcode", "origin": "local"}},
        "done": True,
    }
