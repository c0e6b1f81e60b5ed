"""Shared types for the printer protocol clients.

Both wire clients (:mod:`printerlink.printers.act` and
:mod:`printerlink.printers.octoprint`) raise the exceptions defined here
and return these dataclasses, so the connection manager, discovery and
the CLI never need to know which protocol produced a result.
"""

from __future__ import annotations

import enum
import time
from dataclasses import asdict, dataclass, field
from typing import Any

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PrinterError(Exception):
    """Base exception for all printer-related errors.

    Clients raise a subclass whenever an operation fails in a way the
    caller can reasonably handle.  No client retries internally; every
    failure surfaces on first occurrence.
    """

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class UnreachableError(PrinterError):
    """The printer could not be reached (refused, no route, DNS failure)."""


class PrinterTimeoutError(UnreachableError):
    """A connect, read or overall request deadline was exceeded."""


class HTTPStatusError(PrinterError):
    """The printer answered with a 4xx or 5xx HTTP status."""

    def __init__(self, message: str, status_code: int, *, cause: Exception | None = None) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code


class MalformedResponseError(PrinterError):
    """A reply arrived but did not match the expected shape."""


class CommandRejectedError(PrinterError):
    """The printer answered a control command with an error token."""

    def __init__(self, message: str, *, command: str = "", reply: str = "", cause: Exception | None = None) -> None:
        super().__init__(message, cause=cause)
        self.command = command
        self.reply = reply


class PrinterFileNotFoundError(CommandRejectedError):
    """The file named in a start-print command is not on the printer."""


class ScanSetupError(PrinterError):
    """Discovery could not start (browser failure, no local address)."""


# Names used by HTTP-centric callers.
NetworkError = UnreachableError
DecodeError = MalformedResponseError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PrinterProtocol(enum.Enum):
    """Wire protocol a stored printer record speaks."""

    ACT = "act"
    HTTP_REST = "httpREST"

    @classmethod
    def from_tag(cls, tag: str | PrinterProtocol) -> PrinterProtocol:
        """Map a stored protocol tag (including legacy aliases) to a member.

        Raises :class:`ValueError` for tags that name neither protocol.
        """
        if isinstance(tag, PrinterProtocol):
            return tag
        lowered = str(tag).strip().lower()
        if lowered in ("act", "photon"):
            return cls.ACT
        if lowered in ("httprest", "http", "octoprint", "anycubichttp", "rest"):
            return cls.HTTP_REST
        raise ValueError(f"Unknown printer protocol {tag!r} (expected 'act' or 'httpREST')")


class ActStatus(enum.Enum):
    """Print state reported by an ACT ``getstatus`` reply."""

    IDLE = "idle"
    PRINTING = "printing"
    PAUSED = "paused"
    STOPPING = "stopping"
    UNKNOWN = "unknown"


_ACT_STATUS_TOKENS: dict[str, ActStatus] = {
    "stop": ActStatus.IDLE,
    "idle": ActStatus.IDLE,
    "print": ActStatus.PRINTING,
    "printing": ActStatus.PRINTING,
    "pause": ActStatus.PAUSED,
    "paused": ActStatus.PAUSED,
    "stopping": ActStatus.STOPPING,
}


def parse_act_status(token: str) -> ActStatus:
    """Map a raw status token onto :class:`ActStatus` (case-insensitive)."""
    return _ACT_STATUS_TOKENS.get(token.strip().lower(), ActStatus.UNKNOWN)


# ---------------------------------------------------------------------------
# Printer record
# ---------------------------------------------------------------------------

ACT_DEFAULT_PORT = 6000
HTTP_DEFAULT_PORT = 80

# HttpPrinterStatus.source values.
OCTOPRINT_STATUS_SOURCE = "octoprint"
NATIVE_STATUS_SOURCE = "anycubic"


def default_port_for(protocol: PrinterProtocol) -> int:
    """Return the well-known port for *protocol*."""
    return ACT_DEFAULT_PORT if protocol is PrinterProtocol.ACT else HTTP_DEFAULT_PORT


@dataclass
class PrinterRecord:
    """A stored printer as seen by the connectivity core.

    The record is owned by the caller (config file, database, UI).  The
    connection manager only updates :attr:`is_reachable`,
    :attr:`last_connected` and, for ACT printers, the identity fields
    filled from ``sysinfo``.
    """

    id: str
    name: str
    ip_address: str
    protocol: PrinterProtocol
    port: int | None = None
    api_key: str | None = None
    serial_number: str | None = None
    firmware_version: str | None = None
    model: str | None = None
    last_connected: float | None = None
    is_reachable: bool = False

    def __post_init__(self) -> None:
        self.protocol = PrinterProtocol.from_tag(self.protocol)
        if self.port is None:
            self.port = default_port_for(self.protocol)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary with the key masked."""
        data = asdict(self)
        data["protocol"] = self.protocol.value
        if self.api_key:
            data["api_key"] = "***"
        return data


# ---------------------------------------------------------------------------
# Dataclasses -- structured return types
# ---------------------------------------------------------------------------


@dataclass
class ActStatusReport:
    """Parsed ``getstatus`` reply.

    :attr:`raw_status` keeps the token as received so ``unknown`` states
    can still be shown to the user.
    """

    status: ActStatus
    raw_status: str
    file_name: str | None = None
    current_layer: int | None = None
    total_layers: int | None = None

    @property
    def display_text(self) -> str:
        if self.status is ActStatus.UNKNOWN:
            return self.raw_status.capitalize() or "Unknown"
        return self.status.value.capitalize()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class ActSystemInfo:
    """Parsed ``sysinfo`` reply."""

    model: str
    firmware_version: str
    serial_number: str
    wifi_network: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TemperatureReading:
    """An actual/target temperature pair in degrees Celsius."""

    actual: float | None = None
    target: float | None = None


@dataclass
class HttpPrinterStatus:
    """Printer state from ``GET /api/printer`` or the Anycubic native endpoint.

    :attr:`source` records which endpoint answered.
    """

    state_text: str
    operational: bool = False
    printing: bool = False
    paused: bool = False
    ready: bool = False
    bed: TemperatureReading | None = None
    tool: TemperatureReading | None = None
    printer_name: str | None = None
    source: str = OCTOPRINT_STATUS_SOURCE

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return asdict(self)


@dataclass
class JobStatus:
    """Job state from ``GET /api/job``.

    :attr:`completion` is a percentage (0 -- 100) exactly as reported.
    """

    state: str
    file_name: str | None = None
    completion: float | None = None
    print_time: int | None = None
    print_time_left: int | None = None
    estimated_print_time: int | None = None

    @property
    def progress_fraction(self) -> float | None:
        """Completion as a fraction in ``[0.0, 1.0]``."""
        if self.completion is None:
            return None
        return min(max(self.completion / 100.0, 0.0), 1.0)

    @property
    def remaining_seconds(self) -> int | None:
        return self.print_time_left

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        data = asdict(self)
        data["progress_fraction"] = self.progress_fraction
        return data


@dataclass
class DeviceInfo:
    """Identity reported by the Anycubic native info endpoint."""

    model: str | None = None
    serial_number: str | None = None
    device_id: str | None = None
    firmware_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PrinterFile:
    """Metadata for a single file stored on the printer."""

    name: str
    path: str
    size_bytes: int | None = None
    date: int | None = None  # Unix timestamp

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return asdict(self)


@dataclass
class UploadResult:
    """Outcome of a file upload."""

    file_name: str
    size_bytes: int
    started: bool = False
    uploaded_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return asdict(self)
