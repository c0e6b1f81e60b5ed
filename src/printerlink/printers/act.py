"""ACT client for Anycubic resin printers (Photon family).

The printers expose a plain-text command port (6000 by default).  A
request is a single command line; the reply echoes the command, lists
comma-separated values and ends with ``end``::

    > getstatus
    < getstatus,print,model.pwmx,120,1800,end

    > sysinfo
    < sysinfo,Photon Mono X 6K,V0.2.2,00001A9F00030034,HomeWiFi,end

Some firmware builds answer in ``KEY:VALUE`` form instead
(``STATUS:PRINTING``); both shapes are accepted.

Every call opens exactly one TCP connection and closes it before
returning, on success and on every failure path.  The protocol has no
file transfer: ``goprint`` starts a file that is already stored on the
printer.

The command words are firmware specific, so they live in an
:class:`ActCommandSet` that can be overridden from the ``act_commands``
config section without touching code.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass, fields
from typing import Any

from printerlink.printers.base import (
    ACT_DEFAULT_PORT,
    ActStatusReport,
    ActSystemInfo,
    CommandRejectedError,
    MalformedResponseError,
    PrinterFileNotFoundError,
    PrinterTimeoutError,
    UnreachableError,
    parse_act_status,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_COMMAND_TIMEOUT: float = 5.0
_PROBE_TIMEOUT: float = 2.0
_RECV_CHUNK = 4096
_MAX_REPLY_BYTES = 64 * 1024
_END_MARKER = b",end"

# Start-print reply meaning "no such file on the printer's storage".
_FILE_NOT_FOUND_TOKEN = "ERROR2"


@dataclass(frozen=True)
class ActCommandSet:
    """Literal command words sent to the printer."""

    status: str = "getstatus"
    system_info: str = "sysinfo"
    wifi: str = "getwifi"
    start_print: str = "goprint"
    pause: str = "gopause"
    resume: str = "goresume"
    stop: str = "gostop"
    line_ending: str = "\r\n"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ActCommandSet:
        """Build a command set from a config mapping.

        Unknown keys are logged and ignored; missing keys keep their
        defaults.
        """
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        overrides: dict[str, str] = {}
        for key, value in data.items():
            if key not in known:
                logger.warning("Ignoring unknown ACT command key %r", key)
                continue
            overrides[key] = str(value)
        return cls(**overrides)


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------


def parse_reply(raw: str) -> list[str]:
    """Split a raw reply into its value fields.

    ``"getstatus,print,end"`` gives ``["print"]``; ``"STATUS:PRINTING"``
    gives ``["PRINTING"]``.  Blank input gives ``[]``.
    """
    cleaned = raw.replace("\r", "").replace("\n", "").strip()
    if not cleaned:
        return []
    if "," in cleaned:
        values = [part.strip() for part in cleaned.split(",")[1:]]
        if values and values[-1].lower() == "end":
            values.pop()
        return values
    if ":" in cleaned:
        return [cleaned.split(":", 1)[1].strip()]
    return [cleaned]


def _parse_int(value: str) -> int | None:
    try:
        return int(value)
    except ValueError:
        return None


def _status_report(values: list[str]) -> ActStatusReport:
    if not values or not values[0]:
        raise MalformedResponseError("Empty status reply from printer")

    token = values[0]
    file_name = None
    current_layer = total_layers = None
    if len(values) > 1 and values[1]:
        # Firmware appends "/<index>" to the stored file name.
        file_name = values[1].split("/", 1)[0] or None
    if len(values) > 3:
        current_layer = _parse_int(values[2])
        total_layers = _parse_int(values[3])
        if current_layer is None or total_layers is None or current_layer > total_layers:
            current_layer = total_layers = None

    return ActStatusReport(
        status=parse_act_status(token),
        raw_status=token,
        file_name=file_name,
        current_layer=current_layer,
        total_layers=total_layers,
    )


def _reply_complete(buffer: bytes) -> bool:
    return _END_MARKER in buffer.lower() or buffer.endswith(b"\n")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ActClient:
    """Short-lived-connection client for the ACT command port.

    Args:
        timeout: Overall deadline in seconds for one command, covering
            connect, send and the full reply.
        probe_timeout: Connect deadline used by :meth:`probe`.
        commands: Command vocabulary; defaults to the Photon firmware set.
    """

    def __init__(
        self,
        timeout: float = _COMMAND_TIMEOUT,
        probe_timeout: float = _PROBE_TIMEOUT,
        commands: ActCommandSet | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._timeout = timeout
        self._probe_timeout = probe_timeout
        self._commands = commands or ActCommandSet()

    def __repr__(self) -> str:
        return f"<ActClient timeout={self._timeout}>"

    @property
    def commands(self) -> ActCommandSet:
        return self._commands

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def send_command(self, ip: str, command: str, port: int | None = None) -> list[str]:
        """Send *command* and return the parsed reply values.

        Raises:
            UnreachableError: Connection refused or no route to host.
            PrinterTimeoutError: The deadline passed before a full reply.
        """
        port = port or ACT_DEFAULT_PORT
        raw = self._exchange(ip, port, command)
        logger.debug("ACT %s:%d %r -> %r", ip, port, command, raw)
        return parse_reply(raw)

    def _exchange(self, ip: str, port: int, command: str) -> str:
        deadline = time.monotonic() + self._timeout
        try:
            sock = socket.create_connection((ip, port), timeout=self._timeout)
        except socket.timeout as exc:
            raise PrinterTimeoutError(
                f"Connecting to {ip}:{port} timed out after {self._timeout}s",
                cause=exc,
            ) from exc
        except OSError as exc:
            raise UnreachableError(f"Could not connect to {ip}:{port}: {exc}", cause=exc) from exc

        try:
            sock.sendall((command + self._commands.line_ending).encode("utf-8"))
            buffer = b""
            while not _reply_complete(buffer):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PrinterTimeoutError(
                        f"No complete reply to {command!r} from {ip}:{port} within {self._timeout}s"
                    )
                sock.settimeout(remaining)
                chunk = sock.recv(_RECV_CHUNK)
                if not chunk:
                    break
                buffer += chunk
                if len(buffer) > _MAX_REPLY_BYTES:
                    raise MalformedResponseError(f"Reply to {command!r} from {ip}:{port} exceeds {_MAX_REPLY_BYTES} bytes")
        except socket.timeout as exc:
            raise PrinterTimeoutError(
                f"No reply to {command!r} from {ip}:{port} within {self._timeout}s",
                cause=exc,
            ) from exc
        except OSError as exc:
            raise UnreachableError(f"Connection to {ip}:{port} failed: {exc}", cause=exc) from exc
        finally:
            sock.close()

        return buffer.decode("utf-8", errors="replace")

    def _control(self, ip: str, command: str, port: int | None, *, label: str) -> None:
        values = self.send_command(ip, command, port)
        if not values:
            raise MalformedResponseError(f"Empty reply to {label}")
        error = next((v for v in values if v.upper().startswith("ERROR")), None)
        if error is not None:
            raise CommandRejectedError(
                f"Printer rejected {label} ({error}): no print in progress",
                command=label,
                reply=error,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_status(self, ip: str, port: int | None = None) -> ActStatusReport:
        """Query the print state.

        Raises :class:`MalformedResponseError` on an empty reply.
        """
        return _status_report(self.send_command(ip, self._commands.status, port))

    def get_system_info(self, ip: str, port: int | None = None) -> ActSystemInfo:
        """Query model, firmware, serial number and Wi-Fi network."""
        values = self.send_command(ip, self._commands.system_info, port)
        if len(values) < 4:
            raise MalformedResponseError(f"Expected 4 fields in sysinfo reply, got {len(values)}")
        return ActSystemInfo(
            model=values[0],
            firmware_version=values[1],
            serial_number=values[2],
            wifi_network=values[3],
        )

    def get_wifi_network(self, ip: str, port: int | None = None) -> str:
        values = self.send_command(ip, self._commands.wifi, port)
        if not values or not values[0]:
            raise MalformedResponseError("Empty wifi reply from printer")
        return values[0]

    def test_connection(self, ip: str, port: int | None = None) -> bool:
        """Return ``True`` when the printer answers a status query.

        Failures propagate so the caller can show the cause.
        """
        self.get_status(ip, port)
        return True

    def probe(self, ip: str, port: int | None = None, timeout: float | None = None) -> bool:
        """Return ``True`` if the ACT port accepts a TCP connection.

        Never raises.
        """
        try:
            with socket.create_connection((ip, port or ACT_DEFAULT_PORT), timeout=timeout or self._probe_timeout):
                return True
        except OSError:
            return False

    # ------------------------------------------------------------------
    # Print control
    # ------------------------------------------------------------------

    def start_print(
        self,
        ip: str,
        filename: str,
        *,
        api_key: str | None = None,
        port: int | None = None,
    ) -> None:
        """Start printing *filename* from the printer's own storage.

        *api_key* is accepted for call-site symmetry with the HTTP client
        and ignored; the ACT port has no authentication.

        Raises:
            PrinterFileNotFoundError: The printer does not have the file.
            CommandRejectedError: Any other error token.
        """
        if not filename:
            raise ValueError("filename must not be empty")
        command = f"{self._commands.start_print},{filename}"
        values = self.send_command(ip, command, port)
        error = next((v for v in values if v.upper().startswith("ERROR")), None)
        if error == _FILE_NOT_FOUND_TOKEN:
            raise PrinterFileNotFoundError(
                f"File {filename!r} not found on printer",
                command=self._commands.start_print,
                reply=error,
            )
        if error is not None:
            raise CommandRejectedError(
                f"Printer rejected start of {filename!r} ({error})",
                command=self._commands.start_print,
                reply=error,
            )
        logger.info("Started print of %s on %s", filename, ip)

    def pause_print(self, ip: str, *, api_key: str | None = None, port: int | None = None) -> None:
        self._control(ip, self._commands.pause, port, label="pause")

    def resume_print(self, ip: str, *, api_key: str | None = None, port: int | None = None) -> None:
        self._control(ip, self._commands.resume, port, label="resume")

    def cancel_print(self, ip: str, *, api_key: str | None = None, port: int | None = None) -> None:
        """Stop the running print (``gostop``)."""
        self._control(ip, self._commands.stop, port, label="cancel")
