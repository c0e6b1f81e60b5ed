"""HTTP client for printers exposing an OctoPrint-compatible REST API.

Talks to the `OctoPrint REST API <https://docs.octoprint.org/en/master/api/>`_
(and the Anycubic firmware that mirrors it) via :mod:`requests`.  The
client is stateless with respect to printers: every call names the target
IP, so one instance serves a whole fleet.

There is no retry loop.  A failed request raises on first occurrence and
the caller decides whether to try again; re-sending a print command to
physical hardware is not something a transport layer should do on its own.
"""

from __future__ import annotations

import io
import json
import logging
import os
import time
import uuid
from collections.abc import Callable, Iterator
from typing import IO, Any, Dict, List, Optional, Union
from urllib.parse import quote

import requests
from requests.exceptions import ConnectionError as ReqConnectionError
from requests.exceptions import RequestException, Timeout
from urllib3.exceptions import HTTPError as Urllib3Error
from urllib3.exceptions import ReadTimeoutError

from printerlink.printers.act import ActClient
from printerlink.printers.base import (
    HTTP_DEFAULT_PORT,
    NATIVE_STATUS_SOURCE,
    DeviceInfo,
    HTTPStatusError,
    HttpPrinterStatus,
    JobStatus,
    MalformedResponseError,
    PrinterError,
    PrinterFile,
    PrinterProtocol,
    PrinterTimeoutError,
    TemperatureReading,
    UnreachableError,
    UploadResult,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

# Anycubic firmware serves device identity on a separate port.
_ANYCUBIC_INFO_PORT = 18910

_UPLOAD_CHUNK = 64 * 1024
_READ_CHUNK = 8 * 1024
# Progress stays below 1.0 until the printer acknowledges the upload.
_UPLOAD_PROGRESS_CAP = 0.99


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _safe_get(data: Any, *keys: str, default: Any = None) -> Any:
    """Walk nested dicts safely, returning *default* on any miss or type error."""
    current = data
    for key in keys:
        if not isinstance(current, dict):
            return default
        current = current.get(key, default)
    return current


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    return int(number) if number is not None else None


def _temperature(entry: Any) -> Optional[TemperatureReading]:
    if not isinstance(entry, dict):
        return None
    return TemperatureReading(
        actual=_as_float(entry.get("actual")),
        target=_as_float(entry.get("target")),
    )


def _flatten_files(entries: List[Dict[str, Any]], prefix: str = "") -> List[Dict[str, Any]]:
    """Recursively flatten OctoPrint's nested file/folder listing."""
    flat: List[Dict[str, Any]] = []
    for entry in entries:
        if entry.get("type") == "folder":
            children = entry.get("children", [])
            folder_path = f"{prefix}{entry.get('name', '')}/"
            flat.extend(_flatten_files(children, prefix=folder_path))
        else:
            flat.append(entry)
    return flat


def parse_printer_status(payload: Any) -> HttpPrinterStatus:
    """Map a ``GET /api/printer`` body to :class:`HttpPrinterStatus`.

    Raises :class:`MalformedResponseError` when the body has no ``state``
    object.
    """
    state = _safe_get(payload, "state")
    if not isinstance(state, dict):
        raise MalformedResponseError("Printer status body has no 'state' object")

    flags = state.get("flags")
    if not isinstance(flags, dict):
        flags = {}
    temps = _safe_get(payload, "temperature", default={})

    return HttpPrinterStatus(
        state_text=str(state.get("text") or "Unknown"),
        operational=bool(flags.get("operational")),
        printing=bool(flags.get("printing")),
        paused=bool(flags.get("paused") or flags.get("pausing")),
        ready=bool(flags.get("ready")),
        bed=_temperature(_safe_get(temps, "bed")),
        tool=_temperature(_safe_get(temps, "tool0")),
        printer_name=_safe_get(payload, "printerName") or _safe_get(payload, "name"),
    )


def parse_native_status(payload: Any) -> HttpPrinterStatus:
    """Map an Anycubic ``GET :18910/info`` body to :class:`HttpPrinterStatus`.

    The native endpoint reports a bare ``state`` string and no
    temperatures.  A printer that answers at all is taken as operational.
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError("Native info body is not a JSON object")
    state = str(payload.get("state") or "").strip().lower()
    return HttpPrinterStatus(
        state_text=state or "operational",
        operational=True,
        printing=state == "printing",
        paused=state == "paused",
        ready=state not in ("printing", "paused"),
        printer_name=payload.get("modelName") or "Anycubic Printer",
        source=NATIVE_STATUS_SOURCE,
    )


def parse_job_status(payload: Any) -> JobStatus:
    """Map a ``GET /api/job`` body to :class:`JobStatus`.

    Progress fields are read from the ``progress`` object, or from the top
    level when a firmware flattens them.
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError("Job status body is not a JSON object")

    progress = payload.get("progress")
    if not isinstance(progress, dict):
        progress = payload

    completion = _as_float(progress.get("completion"))
    if completion is not None:
        completion = min(max(completion, 0.0), 100.0)

    return JobStatus(
        state=str(payload.get("state") or "Unknown"),
        file_name=_safe_get(payload, "job", "file", "name"),
        completion=completion,
        print_time=_as_int(progress.get("printTime")),
        print_time_left=_as_int(progress.get("printTimeLeft")),
        estimated_print_time=_as_int(_safe_get(payload, "job", "estimatedPrintTime")),
    )


# ---------------------------------------------------------------------------
# Streaming multipart body
# ---------------------------------------------------------------------------

class _MultipartUpload:
    """File-like multipart/form-data body that reports bytes as they are read.

    ``requests`` streams any object with ``read`` and ``__len__`` without
    buffering it, so progress follows what the socket actually consumed.
    """

    def __init__(
        self,
        source: Union[bytes, IO[bytes]],
        filename: str,
        on_progress: Optional[ProgressCallback],
        fields: Optional[Dict[str, str]] = None,
    ) -> None:
        self.boundary = uuid.uuid4().hex
        if isinstance(source, (bytes, bytearray)):
            self._file: IO[bytes] = io.BytesIO(bytes(source))
            self._file_size = len(source)
        else:
            self._file = source
            current = source.tell()
            self._file_size = source.seek(0, os.SEEK_END) - current
            source.seek(current)

        quoted = filename.replace('"', "%22")
        head = (
            f"--{self.boundary}\r\n"
            f'Content-Disposition: form-data; name="file"; filename="{quoted}"\r\n'
            "Content-Type: application/octet-stream\r\n\r\n"
        ).encode("utf-8")
        tail = "\r\n"
        for name, value in (fields or {}).items():
            tail += (
                f"--{self.boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f"{value}\r\n"
            )
        tail += f"--{self.boundary}--\r\n"

        self._head = head
        self._tail = tail.encode("utf-8")
        self._total = len(self._head) + self._file_size + len(self._tail)
        self._sent = 0
        self._reported = 0.0
        self._on_progress = on_progress
        self._stage = 0  # 0 = head, 1 = file, 2 = tail, 3 = done

    @property
    def file_size(self) -> int:
        return self._file_size

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def __len__(self) -> int:
        return self._total

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(_UPLOAD_CHUNK)
            if not chunk:
                return
            yield chunk

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = _UPLOAD_CHUNK
        chunk = b""
        if self._stage == 0:
            chunk = self._head
            self._stage = 1
        elif self._stage == 1:
            chunk = self._file.read(size)
            if not chunk:
                self._stage = 2
                return self.read(size)
        elif self._stage == 2:
            chunk = self._tail
            self._stage = 3
        self._advance(len(chunk))
        return chunk

    def _advance(self, count: int) -> None:
        if not count:
            return
        self._sent += count
        fraction = min(self._sent / self._total, _UPLOAD_PROGRESS_CAP)
        if fraction > self._reported:
            self._reported = fraction
            if self._on_progress is not None:
                self._on_progress(fraction)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class HttpPrinterClient:
    """Client for OctoPrint-style REST printers.

    Args:
        port: Default HTTP port when a call does not name one.
        timeout: Per-request timeout in seconds (connect and read).
        probe_timeout: Shorter timeout for connectivity probes.
        upload_timeout: Read timeout while waiting for the upload reply.
        act_client: ACT client used by :meth:`is_reachable` for printers
            whose protocol is ACT or not yet known.
        verify_ssl: Verify certificates for ``https`` printers.

    Example::

        client = HttpPrinterClient()
        job = client.get_job_status("192.168.1.60", api_key="ABCDEF")
        print(job.progress_fraction, job.remaining_seconds)
    """

    def __init__(
        self,
        port: int = HTTP_DEFAULT_PORT,
        timeout: float = 10.0,
        probe_timeout: float = 4.0,
        *,
        upload_timeout: float = 300.0,
        act_client: Optional[ActClient] = None,
        scheme: str = "http",
        verify_ssl: bool = True,
    ) -> None:
        self._port = port
        self._timeout = timeout
        self._probe_timeout = probe_timeout
        self._upload_timeout = upload_timeout
        self._act = act_client or ActClient()
        self._scheme = scheme

        self._session: requests.Session = requests.Session()
        self._session.verify = verify_ssl
        self._session.headers.update({"Accept": "application/json"})

    def __repr__(self) -> str:
        return f"<HttpPrinterClient port={self._port} timeout={self._timeout}>"

    @property
    def default_port(self) -> int:
        return self._port

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Internal HTTP helpers
    # ------------------------------------------------------------------

    def _url(self, ip: str, path: str, port: Optional[int] = None) -> str:
        """Build a fully-qualified URL from an address and API path."""
        port = port or self._port
        default = 443 if self._scheme == "https" else 80
        host = ip if port == default else f"{ip}:{port}"
        return f"{self._scheme}://{host}{path}"

    @staticmethod
    def _native_url(ip: str) -> str:
        return f"http://{ip}:{_ANYCUBIC_INFO_PORT}/info"

    def _request(
        self,
        method: str,
        url: str,
        *,
        api_key: Optional[str] = None,
        timeout: Optional[Union[float, tuple]] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> bytes:
        """Execute one HTTP request and map failures to printer errors.

        Returns the response body on success (2xx).  A single float
        *timeout* is also the overall deadline for the whole exchange, so
        a printer trickling bytes cannot hold the call open.  Uploads pass
        a ``(connect, read)`` tuple; their deadline covers only the reply.

        Raises:
            PrinterTimeoutError: Connect, read or overall deadline exceeded.
            UnreachableError: Connection refused, no route, DNS failure.
            HTTPStatusError: Non-2xx status.
        """
        request_headers = dict(headers or {})
        if api_key:
            request_headers["X-Api-Key"] = api_key

        limit = timeout or self._timeout
        started = time.monotonic()
        try:
            response = self._session.request(
                method,
                url,
                json=json,
                params=params,
                data=data,
                headers=request_headers,
                timeout=limit,
                stream=True,
            )
        except Timeout as exc:
            raise PrinterTimeoutError(f"{method} {url} timed out after {limit}s", cause=exc) from exc
        except ReqConnectionError as exc:
            raise UnreachableError(f"Could not connect for {method} {url}", cause=exc) from exc
        except RequestException as exc:
            raise UnreachableError(f"Request error for {method} {url}: {exc}", cause=exc) from exc

        if isinstance(limit, tuple):
            started, limit = time.monotonic(), limit[1]
        try:
            body = self._read_body(response, started + limit, f"{method} {url}", limit)
        finally:
            response.close()

        if not response.ok:
            raise HTTPStatusError(
                f"Printer returned HTTP {response.status_code} for {method} {url}: "
                f"{body[:200].decode('utf-8', errors='replace')}",
                response.status_code,
            )
        return body

    @staticmethod
    def _read_body(response: requests.Response, deadline: float, label: str, limit: float) -> bytes:
        """Read the streamed body, one socket read at a time, until *deadline*."""
        chunks: List[bytes] = []
        try:
            while True:
                if time.monotonic() >= deadline:
                    raise PrinterTimeoutError(f"{label} did not complete within {limit}s")
                chunk = response.raw.read1(_READ_CHUNK, decode_content=True)
                if not chunk:
                    break
                chunks.append(chunk)
        except ReadTimeoutError as exc:
            raise PrinterTimeoutError(f"{label} timed out reading the reply after {limit}s", cause=exc) from exc
        except (Urllib3Error, OSError) as exc:
            raise UnreachableError(f"Connection dropped during {label}: {exc}", cause=exc) from exc
        return b"".join(chunks)

    def _get_json(self, url: str, **kwargs: Any) -> Dict[str, Any]:
        """GET *url* and return the parsed JSON object.

        Raises :class:`MalformedResponseError` if the body is not a JSON
        object.
        """
        raw = self._request("GET", url, **kwargs)
        try:
            body = json.loads(raw)
        except ValueError as exc:
            raise MalformedResponseError(f"Invalid JSON in response from GET {url}", cause=exc) from exc
        if not isinstance(body, dict):
            raise MalformedResponseError(f"Expected a JSON object from GET {url}, got {type(body).__name__}")
        return body

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def test_connection(self, ip: str, port: Optional[int] = None, *, api_key: Optional[str] = None) -> bool:
        """Probe ``GET /api/version``.

        Returns ``True`` only for a 2xx reply with a JSON body; ``False``
        for other HTTP replies.

        Raises:
            UnreachableError: Network failure (including timeouts).
        """
        url = self._url(ip, "/api/version", port)
        try:
            self._get_json(url, api_key=api_key, timeout=self._probe_timeout)
        except (HTTPStatusError, MalformedResponseError) as exc:
            logger.debug("Connection test for %s failed: %s", ip, exc)
            return False
        return True

    def is_reachable(
        self,
        ip: str,
        known_protocol: Optional[PrinterProtocol] = None,
        port: Optional[int] = None,
    ) -> bool:
        """Never-raising reachability check for background refresh.

        ACT printers are probed on their command port.  HTTP printers are
        tried with :meth:`test_connection`, then with the Anycubic native
        info endpoint.  With no known protocol the ACT port is tried first.
        """
        if known_protocol is PrinterProtocol.ACT:
            return self._act.probe(ip, port)
        if known_protocol is None and self._act.probe(ip):
            return True
        try:
            if self.test_connection(ip, port):
                return True
        except PrinterError as exc:
            logger.debug("Reachability check for %s failed: %s", ip, exc)
        return self._native_reachable(ip)

    def _native_reachable(self, ip: str) -> bool:
        try:
            self._request("GET", self._native_url(ip), timeout=self._probe_timeout)
        except PrinterError as exc:
            logger.debug("Native info endpoint on %s unavailable: %s", ip, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_printer_status(self, ip: str, api_key: Optional[str] = None, port: Optional[int] = None) -> HttpPrinterStatus:
        """Fetch state flags and temperatures from ``GET /api/printer``.

        Firmware that only serves the Anycubic native endpoint is read
        through :meth:`get_native_status` instead; if that fails too, the
        original ``/api/printer`` error is raised.
        """
        try:
            payload = self._get_json(self._url(ip, "/api/printer", port), api_key=api_key)
            return parse_printer_status(payload)
        except PrinterError as exc:
            status = self._native_fallback(ip, exc)
            if status is None:
                raise
            return status

    def _native_fallback(self, ip: str, primary: PrinterError) -> Optional[HttpPrinterStatus]:
        try:
            status = self.get_native_status(ip)
        except PrinterError as exc:
            logger.debug("Native status fallback for %s failed: %s", ip, exc)
            return None
        logger.debug("Using native status for %s after /api/printer failed: %s", ip, primary)
        return status

    def get_native_status(self, ip: str) -> HttpPrinterStatus:
        """Read the print state from the Anycubic native ``:18910/info`` endpoint."""
        return parse_native_status(self._get_json(self._native_url(ip), timeout=self._probe_timeout))

    def get_job_status(self, ip: str, api_key: Optional[str] = None, port: Optional[int] = None) -> JobStatus:
        """Fetch the current job from ``GET /api/job``."""
        payload = self._get_json(self._url(ip, "/api/job", port), api_key=api_key)
        return parse_job_status(payload)

    def get_device_info(self, ip: str) -> DeviceInfo:
        """Read identity from the Anycubic native ``:18910/info`` endpoint."""
        payload = self._get_json(self._native_url(ip), timeout=self._probe_timeout)
        return DeviceInfo(
            model=payload.get("modelName"),
            serial_number=payload.get("cn"),
            device_id=payload.get("deviceId"),
            firmware_version=payload.get("firmwareVersion"),
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def upload_file(
        self,
        ip: str,
        data: Union[bytes, IO[bytes]],
        filename: str,
        on_progress: Optional[ProgressCallback] = None,
        *,
        api_key: Optional[str] = None,
        port: Optional[int] = None,
        select: bool = False,
        print_after: bool = False,
    ) -> UploadResult:
        """Stream *data* to ``POST /api/files/local`` as multipart form data.

        *on_progress* receives non-decreasing fractions while the body is
        sent, capped below 1.0, and exactly ``1.0`` once the printer has
        acknowledged the upload.  A failed upload never reports 1.0; the
        caller owns marking any associated job as failed.
        """
        if not filename:
            raise ValueError("filename must not be empty")

        fields: Dict[str, str] = {}
        if select or print_after:
            fields["select"] = "true"
        if print_after:
            fields["print"] = "true"

        body = _MultipartUpload(data, filename, on_progress, fields)
        url = self._url(ip, "/api/files/local", port)
        logger.info("Uploading %s (%d bytes) to %s", filename, len(body), ip)
        raw = self._request(
            "POST",
            url,
            api_key=api_key,
            data=body,
            headers={"Content-Type": body.content_type},
            timeout=(self._timeout, self._upload_timeout),
        )

        try:
            reply = json.loads(raw)
        except ValueError:
            reply = {}
        uploaded_name = _safe_get(reply, "files", "local", "name", default=filename) or filename

        if on_progress is not None:
            on_progress(1.0)
        return UploadResult(
            file_name=uploaded_name,
            size_bytes=body.file_size,
            started=print_after,
        )

    def list_files(self, ip: str, api_key: Optional[str] = None, port: Optional[int] = None) -> List[PrinterFile]:
        """List files on the printer's local storage (folders flattened)."""
        payload = self._get_json(
            self._url(ip, "/api/files/local", port),
            api_key=api_key,
            params={"recursive": "true"},
        )
        raw_files = payload.get("files", [])
        if not isinstance(raw_files, list):
            raise MalformedResponseError("File listing has no 'files' array")

        return [
            PrinterFile(
                name=entry.get("name", ""),
                path=entry.get("path", entry.get("name", "")),
                size_bytes=entry.get("size"),
                date=entry.get("date"),
            )
            for entry in _flatten_files(raw_files)
        ]

    def delete_file(self, ip: str, filename: str, api_key: Optional[str] = None, port: Optional[int] = None) -> None:
        self._request(
            "DELETE",
            self._url(ip, f"/api/files/local/{quote(filename, safe='/')}", port),
            api_key=api_key,
        )

    # ------------------------------------------------------------------
    # Print control
    # ------------------------------------------------------------------

    def start_print(
        self,
        ip: str,
        filename: str,
        *,
        api_key: Optional[str] = None,
        port: Optional[int] = None,
    ) -> None:
        """Select and print a file that already exists on the printer."""
        if not filename:
            raise ValueError("filename must not be empty")
        self._request(
            "POST",
            self._url(ip, f"/api/files/local/{quote(filename, safe='/')}", port),
            api_key=api_key,
            json={"command": "select", "print": True},
        )
        logger.info("Started print of %s on %s", filename, ip)

    def pause_print(self, ip: str, *, api_key: Optional[str] = None, port: Optional[int] = None) -> None:
        self._job_command(ip, {"command": "pause", "action": "pause"}, api_key, port)

    def resume_print(self, ip: str, *, api_key: Optional[str] = None, port: Optional[int] = None) -> None:
        self._job_command(ip, {"command": "pause", "action": "resume"}, api_key, port)

    def cancel_print(self, ip: str, *, api_key: Optional[str] = None, port: Optional[int] = None) -> None:
        self._job_command(ip, {"command": "cancel"}, api_key, port)

    def _job_command(self, ip: str, body: Dict[str, Any], api_key: Optional[str], port: Optional[int]) -> None:
        self._request("POST", self._url(ip, "/api/job", port), api_key=api_key, json=body)
