"""Printer discovery -- find printers on the local network.

Two strategies run side by side:

1. Multicast service browsing (mDNS/Bonjour) through an injectable
   :class:`ServiceBrowser`; the default one is backed by ``zeroconf``.
2. An active sweep of a /24: every host address 1-254 gets a short ACT
   port probe and, failing that, an HTTP connection test.  Probes run on
   a bounded worker pool.

Results are merged per scan session and deduplicated by IP address.  A
later, richer record for a known IP (one carrying a serial number, say)
updates the earlier entry in place instead of producing a second one.
"""

from __future__ import annotations

import concurrent.futures
import enum
import ipaddress
import logging
import socket
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import zeroconf

from printerlink.events import EventBus, EventType
from printerlink.printers.act import ActClient
from printerlink.printers.base import (
    ACT_DEFAULT_PORT,
    PrinterError,
    PrinterProtocol,
    PrinterRecord,
    ScanSetupError,
)
from printerlink.printers.octoprint import HttpPrinterClient

logger = logging.getLogger(__name__)

# mDNS service types to browse
MDNS_SERVICE_TYPES = (
    "_octoprint._tcp.local.",
    "_http._tcp.local.",
)

_SWEEP_HOSTS = range(1, 255)
_DEFAULT_WORKERS = 24
_RESOLVE_TIMEOUT_MS = 3000

# TXT record keys that carry printer identity.
_MODEL_KEYS = ("model", "ty", "product", "printer_model")
_SERIAL_KEYS = ("serial", "sn", "cn")


class DiscoveryMethod(enum.Enum):
    """How a candidate printer was found."""

    MULTICAST = "multicast"
    ACTIVE_HTTP_PROBE = "activeHTTPProbe"
    ACTIVE_ACT_PROBE = "activeACTProbe"
    MANUAL = "manual"


@dataclass
class DiscoveredPrinter:
    """A printer candidate found during a scan session."""

    name: str
    ip_address: str
    discovery_method: DiscoveryMethod
    model: str = ""
    serial_number: str | None = None
    port: int | None = None
    protocol: PrinterProtocol | None = None
    discovered_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.protocol is None:
            if self.discovery_method is DiscoveryMethod.ACTIVE_ACT_PROBE:
                self.protocol = PrinterProtocol.ACT
            else:
                self.protocol = PrinterProtocol.HTTP_REST

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["discovery_method"] = self.discovery_method.value
        data["protocol"] = self.protocol.value
        return data

    def to_record(self, printer_id: str | None = None, *, api_key: str | None = None) -> PrinterRecord:
        """Turn the candidate into a printer record the caller may persist."""
        return PrinterRecord(
            id=printer_id or uuid.uuid4().hex,
            name=self.name,
            ip_address=self.ip_address,
            protocol=self.protocol,
            port=self.port,
            api_key=api_key,
            serial_number=self.serial_number,
            model=self.model or None,
        )

    def merge(self, other: DiscoveredPrinter) -> bool:
        """Fill missing metadata from *other*; return ``True`` if anything changed."""
        changed = False
        if other.model and not self.model:
            self.model = other.model
            changed = True
        if other.serial_number and not self.serial_number:
            self.serial_number = other.serial_number
            changed = True
        if other.port and not self.port:
            self.port = other.port
            changed = True
        return changed


# ---------------------------------------------------------------------------
# Service browsing
# ---------------------------------------------------------------------------


@dataclass
class ResolvedService:
    """A resolved multicast service instance."""

    name: str
    addresses: list[str]
    port: int | None = None
    properties: dict[str, str] = field(default_factory=dict)
    service_type: str = ""


class ServiceBrowser(Protocol):
    """Capability that streams resolved service instances until stopped."""

    def start(self, on_resolved: Callable[[ResolvedService], None]) -> None:
        """Begin browsing; raise :class:`ScanSetupError` if that is impossible."""

    def stop(self) -> None:
        """Stop browsing and release network resources."""


def _decode_properties(raw: dict[Any, Any] | None) -> dict[str, str]:
    props: dict[str, str] = {}
    for key, value in (raw or {}).items():
        k = key.decode("utf-8", "replace") if isinstance(key, bytes) else str(key)
        if value is None:
            continue
        props[k.lower()] = value.decode("utf-8", "replace") if isinstance(value, bytes) else str(value)
    return props


class ZeroconfServiceBrowser:
    """:class:`ServiceBrowser` backed by the ``zeroconf`` library."""

    def __init__(self, service_types: tuple[str, ...] = MDNS_SERVICE_TYPES) -> None:
        self._service_types = service_types
        self._zc: zeroconf.Zeroconf | None = None
        self._browsers: list[zeroconf.ServiceBrowser] = []

    def start(self, on_resolved: Callable[[ResolvedService], None]) -> None:
        browser = self

        class _Listener:
            """Resolve each announced service and hand it on."""

            def add_service(self, zc: zeroconf.Zeroconf, type_: str, name: str) -> None:
                browser._resolve(zc, type_, name, on_resolved)

            def update_service(self, zc: zeroconf.Zeroconf, type_: str, name: str) -> None:
                browser._resolve(zc, type_, name, on_resolved)

            def remove_service(self, zc: zeroconf.Zeroconf, type_: str, name: str) -> None:
                pass

        try:
            self._zc = zeroconf.Zeroconf()
            listener = _Listener()
            self._browsers = [zeroconf.ServiceBrowser(self._zc, t, listener) for t in self._service_types]
        except (OSError, zeroconf.Error) as exc:
            self.stop()
            raise ScanSetupError(f"Multicast discovery could not start: {exc}", cause=exc) from exc

    def _resolve(
        self,
        zc: zeroconf.Zeroconf,
        type_: str,
        name: str,
        on_resolved: Callable[[ResolvedService], None],
    ) -> None:
        info = zc.get_service_info(type_, name, timeout=_RESOLVE_TIMEOUT_MS)
        if info is None:
            return
        addresses = info.parsed_addresses(zeroconf.IPVersion.V4Only)
        if not addresses:
            return
        instance = name[: -len(type_) - 1] if name.endswith("." + type_) else name
        on_resolved(
            ResolvedService(
                name=instance,
                addresses=addresses,
                port=info.port,
                properties=_decode_properties(info.properties),
                service_type=type_,
            )
        )

    def stop(self) -> None:
        for b in self._browsers:
            b.cancel()
        self._browsers = []
        if self._zc is not None:
            self._zc.close()
            self._zc = None


# ---------------------------------------------------------------------------
# Local address detection
# ---------------------------------------------------------------------------


def detect_local_address() -> str | None:
    """Best-effort IPv4 address of the interface that routes to the LAN.

    Returns ``None`` when the host has no usable address.
    """
    try:
        ip = socket.gethostbyname(socket.gethostname())
    except OSError:
        ip = "127.0.0.1"

    # gethostbyname often returns loopback; the UDP connect trick asks
    # the kernel which interface it would route through (nothing is sent).
    if ip.startswith("127."):
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect(("10.255.255.255", 1))
                ip = s.getsockname()[0]
        except OSError:
            logger.debug("Failed to detect local address", exc_info=True)
            return None

    if ip.startswith("127.") or ip == "0.0.0.0":
        return None
    return ip


def sweep_network(base_ip: str) -> ipaddress.IPv4Network:
    """Return the /24 containing *base_ip*.

    Accepts a full address (``"192.168.1.23"``) or its first three octets
    (``"192.168.1"``).

    Raises :class:`ValueError` for anything else.
    """
    parts = base_ip.strip().split(".")
    if len(parts) == 3:
        parts.append("0")
    return ipaddress.IPv4Network(".".join(parts) + "/24", strict=False)


# ---------------------------------------------------------------------------
# Discovery session
# ---------------------------------------------------------------------------


class PrinterDiscovery:
    """Runs multicast browsing and the subnet sweep for one scan session.

    Args:
        act_client: Client used for the ACT port probe and ``sysinfo``.
        http_client: Client used for the HTTP connection test.
        browser: Multicast browser; defaults to :class:`ZeroconfServiceBrowser`.
        max_workers: Upper bound on concurrent sweep probes.
        enrich: Query identity (``sysinfo`` / native info) from hosts that
            answered a probe.
        event_bus: Optional bus receiving discovery events.
        on_found: Called with each new or updated candidate.
        on_progress: Called with the sweep's completed fraction.
    """

    def __init__(
        self,
        act_client: ActClient | None = None,
        http_client: HttpPrinterClient | None = None,
        browser: ServiceBrowser | None = None,
        *,
        max_workers: int = _DEFAULT_WORKERS,
        enrich: bool = True,
        event_bus: EventBus | None = None,
        on_found: Callable[[DiscoveredPrinter], None] | None = None,
        on_progress: Callable[[float], None] | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._act = act_client or ActClient()
        self._http = http_client or HttpPrinterClient(act_client=self._act)
        self._browser: ServiceBrowser = browser if browser is not None else ZeroconfServiceBrowser()
        self._max_workers = max_workers
        self._enrich = enrich
        self._bus = event_bus
        self._on_found = on_found
        self._on_progress = on_progress

        self._lock = threading.Lock()
        # Held while results are recorded and callbacks run, so stop()
        # returns only after the last emission has finished.
        self._emit_lock = threading.RLock()
        self._results: dict[str, DiscoveredPrinter] = {}
        self._token = threading.Event()
        self._token.set()
        self._browsing = False
        self._sweep_thread: threading.Thread | None = None
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None

        self.progress: float = 0.0
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def results(self) -> list[DiscoveredPrinter]:
        """Candidates of the current session, in discovery order."""
        with self._lock:
            return list(self._results.values())

    @property
    def is_scanning(self) -> bool:
        thread = self._sweep_thread
        return self._browsing or (thread is not None and thread.is_alive())

    def start(self, base_ip: str | None = None, *, multicast: bool = True, sweep: bool = True) -> None:
        """Start a new scan session and return immediately.

        Previous results are cleared.  Setup failures are recorded in
        :attr:`last_error` rather than raised.
        """
        self.stop()
        self.clear_results()
        token = threading.Event()
        self._token = token

        if multicast:
            try:
                self._browser.start(lambda service: self._on_service(service, token))
                self._browsing = True
            except ScanSetupError as exc:
                self._record_error(str(exc))

        if sweep:
            self._sweep_thread = threading.Thread(
                target=self._sweep_in_background,
                args=(base_ip, token),
                name="printerlink-sweep",
                daemon=True,
            )
            self._sweep_thread.start()

    def stop(self) -> None:
        """Stop browsing and the sweep.

        No candidate or progress callback fires after this returns.
        """
        self._token.set()
        if self._browsing:
            self._browsing = False
            try:
                self._browser.stop()
            except Exception:
                logger.exception("Service browser failed to stop cleanly")
        executor = self._executor
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        # Wait out any emission that started before the token was set.
        with self._emit_lock:
            pass

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the sweep finishes; return ``False`` on timeout."""
        thread = self._sweep_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def scan_subnet(self, base_ip: str | None = None, *, stop_event: threading.Event | None = None) -> list[DiscoveredPrinter]:
        """Sweep a /24 in the calling thread and return this session's results.

        Raises:
            ScanSetupError: No base address given and none detectable.
        """
        token = stop_event or threading.Event()
        self._token = token
        self._sweep(base_ip, token)
        return self.results

    def probe_host(self, ip: str) -> DiscoveredPrinter | None:
        """Probe a single manually entered address (not recorded)."""
        found = self._probe(ip, threading.Event())
        if found is not None:
            found.discovery_method = DiscoveryMethod.MANUAL
        return found

    def clear_results(self) -> None:
        with self._lock:
            self._results.clear()
        self.progress = 0.0
        self.last_error = None

    # ------------------------------------------------------------------
    # Multicast
    # ------------------------------------------------------------------

    def _on_service(self, service: ResolvedService, token: threading.Event) -> None:
        props = service.properties
        model = next((props[k] for k in _MODEL_KEYS if props.get(k)), "")
        serial = next((props[k] for k in _SERIAL_KEYS if props.get(k)), None)
        self._emit(
            DiscoveredPrinter(
                name=service.name,
                ip_address=service.addresses[0],
                discovery_method=DiscoveryMethod.MULTICAST,
                model=model,
                serial_number=serial,
                port=service.port,
            ),
            token,
        )

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def _sweep_in_background(self, base_ip: str | None, token: threading.Event) -> None:
        try:
            self._sweep(base_ip, token)
        except ScanSetupError as exc:
            # Already recorded in last_error by _sweep.
            logger.debug("Background sweep did not start: %s", exc)

    def _sweep(self, base_ip: str | None, token: threading.Event) -> None:
        base = base_ip or detect_local_address()
        if not base:
            message = "No local network address available for the subnet sweep"
            self._record_error(message)
            raise ScanSetupError(message)
        try:
            network = sweep_network(base)
        except ValueError as exc:
            self._record_error(f"Invalid base address {base!r}")
            raise ScanSetupError(f"Invalid base address {base!r}", cause=exc) from exc

        hosts = [str(network.network_address + i) for i in _SWEEP_HOSTS]
        logger.info("Sweeping %s (%d hosts, %d workers)", network, len(hosts), self._max_workers)
        self.progress = 0.0

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix="printerlink-probe",
        )
        self._executor = executor
        try:
            futures = [executor.submit(self._probe, ip, token) for ip in hosts]
            completed = 0
            for future in concurrent.futures.as_completed(futures):
                if token.is_set():
                    break
                completed += 1
                exc = future.exception()
                if exc is not None:
                    logger.debug("Probe worker failed: %s", exc)
                elif future.result() is not None:
                    self._emit(future.result(), token)
                self._report_progress(completed / len(hosts), token)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            # A restarted session may already own a newer executor.
            if self._executor is executor:
                self._executor = None

        logger.info("Sweep of %s finished: %d printer(s)", network, len(self.results))

    def _probe(self, ip: str, token: threading.Event) -> DiscoveredPrinter | None:
        """Probe one host; transient failures are logged at DEBUG only."""
        if token.is_set():
            return None
        try:
            if self._act.probe(ip):
                return self._act_candidate(ip, token)
            if token.is_set():
                return None
            if self._http.test_connection(ip):
                return self._http_candidate(ip, token)
        except (PrinterError, OSError) as exc:
            logger.debug("Probe of %s failed: %s", ip, exc)
        return None

    def _act_candidate(self, ip: str, token: threading.Event) -> DiscoveredPrinter:
        candidate = DiscoveredPrinter(
            name=f"Resin printer {ip}",
            ip_address=ip,
            discovery_method=DiscoveryMethod.ACTIVE_ACT_PROBE,
            port=ACT_DEFAULT_PORT,
        )
        if self._enrich and not token.is_set():
            try:
                info = self._act.get_system_info(ip)
            except PrinterError as exc:
                logger.debug("sysinfo from %s failed: %s", ip, exc)
            else:
                candidate.name = info.model or candidate.name
                candidate.model = info.model
                candidate.serial_number = info.serial_number or None
        return candidate

    def _http_candidate(self, ip: str, token: threading.Event) -> DiscoveredPrinter:
        candidate = DiscoveredPrinter(
            name=f"Printer {ip}",
            ip_address=ip,
            discovery_method=DiscoveryMethod.ACTIVE_HTTP_PROBE,
            port=self._http.default_port,
        )
        if self._enrich and not token.is_set():
            try:
                info = self._http.get_device_info(ip)
            except PrinterError as exc:
                logger.debug("Native info from %s unavailable: %s", ip, exc)
            else:
                candidate.name = info.model or candidate.name
                candidate.model = info.model or ""
                candidate.serial_number = info.serial_number
        return candidate

    # ------------------------------------------------------------------
    # Result bookkeeping
    # ------------------------------------------------------------------

    def _emit(self, candidate: DiscoveredPrinter, token: threading.Event) -> None:
        with self._emit_lock:
            if token.is_set():
                return
            with self._lock:
                existing = self._results.get(candidate.ip_address)
                if existing is None:
                    self._results[candidate.ip_address] = candidate
                    target = candidate
                elif existing.merge(candidate):
                    target = existing
                else:
                    return
            logger.info("Found %s at %s via %s", target.name, target.ip_address, target.discovery_method.value)
            if self._on_found is not None:
                self._on_found(target)
            if self._bus is not None:
                self._bus.publish(EventType.PRINTER_DISCOVERED, target.to_dict(), source="discovery")

    def _report_progress(self, fraction: float, token: threading.Event) -> None:
        with self._emit_lock:
            if token.is_set():
                return
            self.progress = fraction
            if self._on_progress is not None:
                self._on_progress(fraction)
            if self._bus is not None:
                self._bus.publish(EventType.SCAN_PROGRESS, {"progress": fraction}, source="discovery")

    def _record_error(self, message: str) -> None:
        logger.warning("Discovery: %s", message)
        self.last_error = message
        if self._bus is not None:
            self._bus.publish(EventType.SCAN_FAILED, {"error": message}, source="discovery")
