"""Local network reachability monitor.

Tracks which kind of network path the host is on and whether printers on
the LAN can plausibly be reached from it.  The result is advisory: it
drives warnings such as "on cellular, local printers unavailable", never
whether a network call is attempted.

Path detection on Linux reads the default route from ``/proc/net/route``
and classifies its interface through ``/sys/class/net``.  Other platforms
fall back to an outbound-address check, which can tell "connected" from
"no network" but not the interface type.
"""

from __future__ import annotations

import enum
import logging
import os
import socket
import threading
from collections.abc import Callable
from dataclasses import dataclass

from printerlink.events import EventBus, EventType

logger = logging.getLogger(__name__)

_ROUTE_TABLE = "/proc/net/route"
_SYS_NET = "/sys/class/net"
_DEFAULT_INTERVAL = 10.0

# Interface name prefixes used when sysfs has no answer.
_WIFI_PREFIXES = ("wl", "wlan", "ath", "ra")
_ETHERNET_PREFIXES = ("eth", "en", "em", "bond", "br")
_CELLULAR_PREFIXES = ("wwan", "rmnet", "ppp", "usb", "ccmni")

# ARPHRD_ETHER from include/uapi/linux/if_arp.h
_ARPHRD_ETHER = 1


class InterfaceType(enum.Enum):
    WIFI = "wifi"
    ETHERNET = "ethernet"
    CELLULAR = "cellular"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class NetworkPath:
    """One observation of the host's network path."""

    connected: bool
    interface_type: InterfaceType | None = None
    interface_name: str | None = None

    @property
    def can_access_local_printers(self) -> bool:
        return self.connected and self.interface_type in (
            InterfaceType.WIFI,
            InterfaceType.ETHERNET,
            InterfaceType.UNKNOWN,
        )

    @property
    def status_description(self) -> str:
        if not self.connected:
            return "No Network"
        if self.interface_type is InterfaceType.WIFI:
            return "WiFi Connected"
        if self.interface_type is InterfaceType.ETHERNET:
            return "Ethernet Connected"
        if self.interface_type is InterfaceType.CELLULAR:
            return "Cellular (Local printers unavailable)"
        return "Connected"

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "interface_type": self.interface_type.value if self.interface_type else None,
            "interface_name": self.interface_name,
            "can_access_local_printers": self.can_access_local_printers,
            "status": self.status_description,
        }


DISCONNECTED = NetworkPath(connected=False)

PathProvider = Callable[[], NetworkPath]


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def default_route_interface(route_table: str = _ROUTE_TABLE) -> str | None:
    """Return the interface carrying the IPv4 default route, if any."""
    try:
        with open(route_table, encoding="ascii") as fh:
            lines = fh.read().splitlines()
    except OSError:
        return None
    for line in lines[1:]:
        parts = line.split()
        # Iface Destination Gateway Flags ...; destination 0 is the default.
        if len(parts) >= 4 and parts[1] == "00000000":
            try:
                flags = int(parts[3], 16)
            except ValueError:
                continue
            if flags & 0x1:  # RTF_UP
                return parts[0]
    return None


def classify_interface(name: str, sys_net: str = _SYS_NET) -> InterfaceType:
    """Classify *name* as wifi, ethernet, cellular or unknown."""
    base = os.path.join(sys_net, name)
    if os.path.isdir(os.path.join(base, "wireless")) or os.path.exists(os.path.join(base, "phy80211")):
        return InterfaceType.WIFI

    lowered = name.lower()
    if lowered.startswith(_CELLULAR_PREFIXES):
        return InterfaceType.CELLULAR
    if lowered.startswith(_WIFI_PREFIXES):
        return InterfaceType.WIFI

    try:
        with open(os.path.join(base, "type"), encoding="ascii") as fh:
            if int(fh.read().strip()) == _ARPHRD_ETHER:
                return InterfaceType.ETHERNET
    except (OSError, ValueError):
        pass
    if lowered.startswith(_ETHERNET_PREFIXES):
        return InterfaceType.ETHERNET
    return InterfaceType.UNKNOWN


def _has_outbound_address() -> bool:
    # UDP connect sends nothing; it only asks the kernel for a route.
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("10.255.255.255", 1))
            address = sock.getsockname()[0]
    except OSError:
        return False
    return bool(address) and not address.startswith(("127.", "0."))


def detect_network_path(
    route_table: str = _ROUTE_TABLE,
    sys_net: str = _SYS_NET,
) -> NetworkPath:
    """Observe the current network path.  Never raises."""
    iface = default_route_interface(route_table)
    if iface is not None:
        return NetworkPath(
            connected=True,
            interface_type=classify_interface(iface, sys_net),
            interface_name=iface,
        )
    if _has_outbound_address():
        return NetworkPath(connected=True, interface_type=InterfaceType.UNKNOWN)
    return DISCONNECTED


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class NetworkReachabilityMonitor:
    """Keeps the latest :class:`NetworkPath` and reports changes.

    Args:
        path_provider: Callable returning the current path; injectable so
            tests do not depend on the host's interfaces.
        interval: Seconds between checks while started.
        event_bus: Receives ``network.changed`` when the path changes.
    """

    def __init__(
        self,
        path_provider: PathProvider | None = None,
        *,
        interval: float = _DEFAULT_INTERVAL,
        event_bus: EventBus | None = None,
    ) -> None:
        self._provider = path_provider or detect_network_path
        self._interval = interval
        self._bus = event_bus
        self._lock = threading.Lock()
        self._path: NetworkPath | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._listeners: list[Callable[[NetworkPath], None]] = []

    @property
    def path(self) -> NetworkPath:
        """Latest observation, checking once if nothing has been observed."""
        with self._lock:
            path = self._path
        return path if path is not None else self.update()

    @property
    def can_access_local_printers(self) -> bool:
        return self.path.can_access_local_printers

    @property
    def status_description(self) -> str:
        return self.path.status_description

    def on_change(self, listener: Callable[[NetworkPath], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def update(self) -> NetworkPath:
        """Check the path now and notify listeners if it changed."""
        try:
            current = self._provider()
        except Exception:
            logger.exception("Network path check failed")
            current = DISCONNECTED

        with self._lock:
            previous = self._path
            self._path = current
            listeners = list(self._listeners)

        if previous is not None and previous != current:
            logger.info("Network path changed: %s -> %s", previous.status_description, current.status_description)
            for listener in listeners:
                try:
                    listener(current)
                except Exception:
                    logger.exception("Network change listener %r failed", listener)
            if self._bus is not None:
                self._bus.publish(
                    EventType.NETWORK_CHANGED,
                    {"previous": previous.to_dict(), "current": current.to_dict()},
                    source="reachability",
                )
        return current

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self.update()
        self._thread = threading.Thread(target=self._run, name="printerlink-reachability", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 2.0) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self.update()
