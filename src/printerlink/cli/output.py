"""Output formatting for the printerlink CLI.

Every public function accepts a ``json_mode`` flag:
    - ``True``  -> JSON envelope ``{"status": ..., "data": ...}`` for scripts
    - ``False`` -> Rich-rendered panels and tables for humans
"""

from __future__ import annotations

import json
from datetime import datetime
from io import StringIO
from typing import Any, Dict, List, Optional, Union

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

# ---------------------------------------------------------------------------
# Generic helpers
# ---------------------------------------------------------------------------


def format_time(seconds: Optional[Union[int, float]]) -> str:
    """Convert seconds to ``Xh Ym Zs``."""
    if seconds is None or seconds < 0:
        return "N/A"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    parts: list[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def format_temp(reading: Optional[Dict[str, Any]]) -> str:
    """Format a temperature reading like ``24.8°C / 60.0°C``."""
    if not reading:
        return "N/A"
    actual = reading.get("actual")
    target = reading.get("target")
    actual_str = f"{actual:.1f}°C" if actual is not None else "N/A"
    target_str = f"{target:.1f}°C" if target else "off"
    return f"{actual_str} / {target_str}"


def progress_bar(fraction: Optional[float], width: int = 20) -> str:
    """ASCII progress bar for a 0.0 -- 1.0 fraction: ``[████░░░░] 42.5%``."""
    if fraction is None:
        fraction = 0.0
    fraction = max(0.0, min(1.0, fraction))
    filled = int(round(width * fraction))
    bar = "█" * filled + "░" * (width - filled)
    return f"[{bar}] {fraction * 100:.1f}%"


def _render(renderable: Any) -> str:
    buf = StringIO()
    console = Console(file=buf, width=100)
    console.print(renderable)
    return buf.getvalue().rstrip("\n")


def _success(data: Dict[str, Any]) -> str:
    return json.dumps({"status": "success", "data": data}, indent=2, sort_keys=False, default=str)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def format_error(
    message: str,
    code: str = "ERROR",
    *,
    json_mode: bool = False,
) -> str:
    """Standard error output: ``{status: error, error: {code, message}}``."""
    if json_mode:
        return json.dumps(
            {"status": "error", "error": {"code": code, "message": message}},
            indent=2,
            sort_keys=False,
        )
    t = Text()
    t.append("Error", style="bold red")
    t.append(f" [{code}]: ", style="red")
    t.append(message)
    return _render(Panel(t, title="Error", border_style="red"))


def format_action(
    action: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    *,
    json_mode: bool = False,
) -> str:
    """Format the result of a control, upload or config action."""
    if json_mode:
        return _success({"action": action, "message": message, **(data or {})})
    border = {"cancel": "red", "pause": "yellow", "remove": "yellow"}.get(action, "green")
    return _render(Panel(Text(message, style=f"bold {border}"), title=action.capitalize(), border_style=border))


# ---------------------------------------------------------------------------
# Printer status
# ---------------------------------------------------------------------------


_STATE_COLORS = {
    "idle": "green",
    "operational": "green",
    "printing": "yellow",
    "paused": "yellow",
    "stopping": "yellow",
    "offline": "red",
    "error": "red",
}


def format_status(
    printer: Dict[str, Any],
    status: Dict[str, Any],
    *,
    json_mode: bool = False,
) -> str:
    """Format one printer's live status.

    Expects dicts from ``PrinterRecord.to_dict()`` and ``LiveStatus.to_dict()``.
    Ungated fields are only shown while the printer is reachable.
    """
    if json_mode:
        return _success({"printer": printer, "status": status})

    state_text = status.get("display_state", "unknown")
    color = _STATE_COLORS.get(state_text.lower(), "white")

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Printer", f"{printer.get('name', '')} ({printer.get('ip_address', '')})")
    table.add_row("Protocol", str(printer.get("protocol", "")))
    table.add_row("State", f"[{color}]{state_text}[/{color}]")

    if status.get("reachable"):
        if status.get("protocol") == "httpREST":
            table.add_row("Nozzle", format_temp(status.get("tool_temperature")))
            table.add_row("Bed", format_temp(status.get("bed_temperature")))
        if status.get("file_name"):
            table.add_row("File", status["file_name"])
        if status.get("current_layer") is not None and status.get("total_layers"):
            table.add_row("Layer", f"{status['current_layer']} / {status['total_layers']}")
        if status.get("progress") is not None:
            table.add_row("Progress", progress_bar(status["progress"]))
        if status.get("time_remaining") is not None:
            table.add_row("Time left", format_time(status["time_remaining"]))
        if status.get("completion_eta"):
            eta = datetime.fromtimestamp(status["completion_eta"]).strftime("%H:%M")
            table.add_row("Done at", eta)
    elif status.get("error_message"):
        table.add_row("Error", f"[red]{status['error_message']}[/red]")

    return _render(Panel(table, title="Printer Status", border_style="blue"))


# ---------------------------------------------------------------------------
# Printer list
# ---------------------------------------------------------------------------


def format_printers(
    printers: List[Dict[str, Any]],
    *,
    json_mode: bool = False,
) -> str:
    """Format the list of saved printers."""
    if json_mode:
        return _success({"printers": printers, "count": len(printers)})

    if not printers:
        return _render(Panel("No printers configured.  Run 'printerlink discover' to find one.", border_style="yellow"))

    table = Table(title="Configured Printers", border_style="blue")
    table.add_column("Name", style="bold")
    table.add_column("Protocol")
    table.add_column("Address")
    table.add_column("Model")
    table.add_column("Active")
    for p in printers:
        address = p.get("ip", "")
        if p.get("port"):
            address = f"{address}:{p['port']}"
        table.add_row(p["name"], str(p.get("protocol", "")), address, p.get("model") or "", "✓" if p.get("active") else "")
    return _render(table)


# ---------------------------------------------------------------------------
# Discovery results
# ---------------------------------------------------------------------------


def format_discovered(
    printers: List[Dict[str, Any]],
    *,
    json_mode: bool = False,
    error: Optional[str] = None,
) -> str:
    """Format discovered printers.

    Expects dicts from ``DiscoveredPrinter.to_dict()``.  *error* is the
    scan's systemic failure message, if any.
    """
    if json_mode:
        data: Dict[str, Any] = {"printers": printers, "count": len(printers)}
        if error:
            data["scan_error"] = error
        return _success(data)

    parts: list[str] = []
    if error:
        parts.append(_render(Text(f"Warning: {error}", style="yellow")))

    if not printers:
        parts.append(_render(Panel("No printers found on the network.", border_style="yellow")))
        return "\n".join(parts)

    table = Table(title="Discovered Printers", border_style="green")
    table.add_column("Name", style="bold")
    table.add_column("Address")
    table.add_column("Protocol")
    table.add_column("Model")
    table.add_column("Serial")
    table.add_column("Method")
    for p in printers:
        address = p.get("ip_address", "")
        if p.get("port"):
            address = f"{address}:{p['port']}"
        table.add_row(
            p.get("name", ""),
            address,
            str(p.get("protocol", "")),
            p.get("model") or "",
            p.get("serial_number") or "",
            str(p.get("discovery_method", "")),
        )
    parts.append(_render(table))
    return "\n".join(parts)


def format_network(path: Dict[str, Any], *, json_mode: bool = False) -> str:
    """Format a ``NetworkPath.to_dict()`` observation."""
    if json_mode:
        return _success(path)
    ok = path.get("can_access_local_printers")
    color = "green" if ok else "red"
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Network", f"[{color}]{path.get('status', '')}[/{color}]")
    if path.get("interface_name"):
        table.add_row("Interface", path["interface_name"])
    table.add_row("Local printers", "reachable" if ok else "[red]unavailable[/red]")
    return _render(Panel(table, title="Network", border_style=color))
