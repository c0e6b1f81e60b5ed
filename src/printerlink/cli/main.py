"""printerlink CLI: discover, save and drive network 3D printers.

Provides a ``printerlink`` command with subcommands for discovery,
saved-printer management, status and monitoring, uploads and print
control.  Every subcommand supports ``--json`` for machine-parseable
output; failures print a structured error and exit with status 1.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
import time
import uuid
from typing import NoReturn

import click

from printerlink.config import (
    list_printers as _list_printers,
)
from printerlink.config import (
    load_printer,
    load_settings,
    remove_printer,
    save_printer,
    set_active_printer,
)
from printerlink.cli.output import (
    format_action,
    format_discovered,
    format_error,
    format_network,
    format_printers,
    format_status,
)
from printerlink.connection import ConnectionState, LiveStatus, PrinterConnectionManager
from printerlink.discovery import PrinterDiscovery, ZeroconfServiceBrowser
from printerlink.events import Event, EventBus
from printerlink.log_config import configure_logging
from printerlink.printers.act import ActClient
from printerlink.printers.base import (
    CommandRejectedError,
    HTTPStatusError,
    MalformedResponseError,
    PrinterError,
    PrinterFileNotFoundError,
    PrinterProtocol,
    PrinterRecord,
    PrinterTimeoutError,
    ScanSetupError,
    UnreachableError,
)
from printerlink.printers.dispatch import PrinterDispatcher
from printerlink.printers.octoprint import HttpPrinterClient
from printerlink.reachability import detect_network_path

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error_code(exc: Exception) -> str:
    """Stable error code for a printer exception."""
    if isinstance(exc, PrinterTimeoutError):
        return "TIMEOUT"
    if isinstance(exc, UnreachableError):
        return "UNREACHABLE"
    if isinstance(exc, HTTPStatusError):
        return "HTTP_ERROR"
    if isinstance(exc, MalformedResponseError):
        return "MALFORMED_RESPONSE"
    if isinstance(exc, PrinterFileNotFoundError):
        return "FILE_NOT_FOUND"
    if isinstance(exc, CommandRejectedError):
        return "COMMAND_REJECTED"
    if isinstance(exc, ScanSetupError):
        return "SCAN_SETUP_ERROR"
    return "PRINTER_ERROR"


def _fail(message: str, code: str, json_mode: bool) -> NoReturn:
    click.echo(format_error(message, code=code, json_mode=json_mode))
    sys.exit(1)


def _make_dispatcher(ctx: click.Context) -> PrinterDispatcher:
    """Build protocol clients from the resolved settings."""
    settings = ctx.obj["settings"]
    act = ActClient(
        timeout=settings.act_timeout,
        probe_timeout=settings.probe_timeout,
        commands=settings.act_commands,
    )
    http = HttpPrinterClient(
        timeout=settings.http_timeout,
        probe_timeout=settings.probe_timeout,
        act_client=act,
    )
    return PrinterDispatcher(act=act, http=http)


def _printer_from_ctx(ctx: click.Context, json_mode: bool) -> PrinterRecord:
    try:
        return load_printer(ctx.obj.get("printer"))
    except ValueError as exc:
        _fail(str(exc), "NOT_FOUND", json_mode)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--printer",
    "-p",
    default=None,
    envvar="PRINTERLINK_PRINTER",
    help="Saved printer name to use (overrides the active printer).",
)
@click.version_option(package_name="printerlink")
@click.pass_context
def cli(ctx: click.Context, printer: str | None) -> None:
    """printerlink - network control for ACT and OctoPrint-style printers."""
    ctx.ensure_object(dict)
    ctx.obj["printer"] = printer
    ctx.obj["settings"] = load_settings()
    try:
        configure_logging()
    except OSError as exc:
        logger.debug("File logging unavailable: %s", exc)


# ---------------------------------------------------------------------------
# discover
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--timeout", "-t", default=5.0, help="Seconds to keep listening for multicast announcements.")
@click.option(
    "--subnet",
    "-s",
    default=None,
    help="Subnet to sweep (e.g. '192.168.1'). Auto-detected if omitted.",
)
@click.option("--no-sweep", is_flag=True, help="Skip the active /24 sweep.")
@click.option("--no-mdns", is_flag=True, help="Skip multicast service browsing.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def discover(ctx: click.Context, timeout: float, subnet: str | None, no_sweep: bool, no_mdns: bool, json_mode: bool) -> None:
    """Scan the local network for printers.

    Multicast browsing and the subnet sweep run together; results are
    deduplicated by IP address.
    """
    if no_sweep and no_mdns:
        _fail("Nothing to do: both --no-sweep and --no-mdns were given.", "USAGE", json_mode)

    dispatcher = _make_dispatcher(ctx)
    discovery = PrinterDiscovery(
        dispatcher.act,
        dispatcher.http,
        browser=None if no_mdns else ZeroconfServiceBrowser(),
        max_workers=ctx.obj["settings"].sweep_workers,
    )

    started = time.monotonic()
    try:
        discovery.start(subnet, multicast=not no_mdns, sweep=not no_sweep)
        if not no_sweep:
            if not json_mode:
                click.echo("Sweeping the local subnet...", err=True)
            discovery.wait()
        remaining = timeout - (time.monotonic() - started)
        if not no_mdns and remaining > 0:
            threading.Event().wait(remaining)
    except KeyboardInterrupt:
        logger.info("Discovery interrupted")
    finally:
        discovery.stop()

    found = discovery.results
    if not found and discovery.last_error and no_mdns:
        _fail(f"Network discovery failed: {discovery.last_error}", "DISCOVERY_ERROR", json_mode)

    click.echo(format_discovered([p.to_dict() for p in found], json_mode=json_mode, error=discovery.last_error))
    if not json_mode and not found:
        click.echo(
            "\nTip: discovery may miss printers on some networks. "
            "Use 'printerlink add <name> <ip>' with the printer's address."
        )


# ---------------------------------------------------------------------------
# Saved printers
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("name")
@click.argument("ip")
@click.option(
    "--protocol",
    type=click.Choice(["act", "http"]),
    default=None,
    help="Printer protocol. Detected by probing when omitted.",
)
@click.option("--port", type=int, default=None, help="Override the protocol's default port.")
@click.option("--api-key", default=None, help="API key sent as X-Api-Key (HTTP printers).")
@click.option("--skip-test", is_flag=True, help="Save without testing the connection.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def add(
    ctx: click.Context,
    name: str,
    ip: str,
    protocol: str | None,
    port: int | None,
    api_key: str | None,
    skip_test: bool,
    json_mode: bool,
) -> None:
    """Save a printer after testing that it answers."""
    dispatcher = _make_dispatcher(ctx)
    if protocol is None:
        protocol = "act" if dispatcher.act.probe(ip, port) else "http"
        logger.info("Detected %s protocol for %s", protocol, ip)

    printer = PrinterRecord(
        id=uuid.uuid4().hex,
        name=name,
        ip_address=ip,
        protocol=PrinterProtocol.from_tag(protocol),
        port=port,
        api_key=api_key,
    )

    if not skip_test:
        try:
            ok = dispatcher.test_connection(printer)
        except PrinterError as exc:
            _fail(f"Could not add printer {name!r}: {exc}", _error_code(exc), json_mode)
            return
        if not ok:
            _fail(
                f"Could not add printer {name!r}: {ip} did not answer like an OctoPrint-compatible printer. "
                "Check the address, port and API key.",
                "CONNECTION_TEST_FAILED",
                json_mode,
            )
        if printer.protocol is PrinterProtocol.ACT:
            try:
                info = dispatcher.act.get_system_info(ip, printer.port)
            except PrinterError as exc:
                logger.debug("sysinfo from %s unavailable: %s", ip, exc)
            else:
                printer.model = info.model or None
                printer.firmware_version = info.firmware_version or None
                printer.serial_number = info.serial_number or None

    try:
        path = save_printer(printer)
    except OSError as exc:
        _fail(f"Failed to save printer: {exc}. Check permissions on ~/.printerlink/", "CONFIG_ERROR", json_mode)
        return

    click.echo(
        format_action(
            "add",
            f"Saved {name} ({printer.protocol.value} {ip}:{printer.port}).",
            {"printer": printer.to_dict(), "config_path": str(path)},
            json_mode=json_mode,
        )
    )


@cli.command()
@click.argument("name")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
def remove(name: str, json_mode: bool) -> None:
    """Remove a saved printer."""
    try:
        remove_printer(name)
    except ValueError as exc:
        _fail(str(exc), "NOT_FOUND", json_mode)
    except OSError as exc:
        _fail(f"Failed to update config: {exc}", "CONFIG_ERROR", json_mode)
    click.echo(format_action("remove", f"Removed {name}.", {"name": name}, json_mode=json_mode))


@cli.command()
@click.argument("name")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
def use(name: str, json_mode: bool) -> None:
    """Make NAME the active printer."""
    try:
        set_active_printer(name)
    except ValueError as exc:
        _fail(str(exc), "NOT_FOUND", json_mode)
    except OSError as exc:
        _fail(f"Failed to update config: {exc}", "CONFIG_ERROR", json_mode)
    click.echo(format_action("use", f"Active printer: {name}.", {"name": name}, json_mode=json_mode))


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
def printers(json_mode: bool) -> None:
    """List saved printers."""
    click.echo(format_printers(_list_printers(), json_mode=json_mode))


# ---------------------------------------------------------------------------
# status / monitor
# ---------------------------------------------------------------------------


def _poll_once(ctx: click.Context, printer: PrinterRecord) -> LiveStatus | None:
    settings = ctx.obj["settings"]
    manager = PrinterConnectionManager(
        _make_dispatcher(ctx),
        poll_interval=settings.poll_interval,
        fetch_system_info=False,
    )
    manager.start_monitoring(printer)
    try:
        manager.wait_for_first_poll(timeout=settings.act_timeout + 2 * settings.http_timeout + 1.0)
        return manager.status
    finally:
        manager.stop_monitoring()


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def status(ctx: click.Context, json_mode: bool) -> None:
    """Poll the printer once and show its state and job progress."""
    printer = _printer_from_ctx(ctx, json_mode)
    snapshot = _poll_once(ctx, printer)
    if snapshot is None or snapshot.reachable is not True:
        reason = snapshot.error_message if snapshot else "no reply before the deadline"
        _fail(
            f"Failed to get status of {printer.name}: {reason}. Verify the printer is online.",
            "UNREACHABLE" if snapshot is None or snapshot.connection_state is ConnectionState.DISCONNECTED else "PRINTER_ERROR",
            json_mode,
        )
        return
    click.echo(format_status(printer.to_dict(), snapshot.to_dict(), json_mode=json_mode))


@cli.command()
@click.option("--interval", "-i", type=float, default=None, help="Seconds between polls (default from settings).")
@click.option("--count", "-n", type=int, default=0, help="Stop after N status updates (0 = until Ctrl-C).")
@click.option("--json", "json_mode", is_flag=True, help="Output one JSON object per line.")
@click.pass_context
def monitor(ctx: click.Context, interval: float | None, count: int, json_mode: bool) -> None:
    """Poll the printer continuously and print each update."""
    printer = _printer_from_ctx(ctx, json_mode)
    bus = EventBus()
    manager = PrinterConnectionManager(
        _make_dispatcher(ctx),
        poll_interval=interval or ctx.obj["settings"].poll_interval,
        event_bus=bus,
    )
    done = threading.Event()
    updates = 0

    def on_status(snapshot: LiveStatus) -> None:
        nonlocal updates
        if snapshot.connection_state is ConnectionState.CONNECTING:
            return
        if json_mode:
            click.echo(json.dumps({"type": "status", "data": snapshot.to_dict()}, default=str))
        else:
            line = f"{time.strftime('%H:%M:%S')} {printer.name}: {snapshot.display_state}"
            if snapshot.progress_fraction is not None:
                line += f" {snapshot.progress_fraction * 100:.1f}%"
            if snapshot.reachable is False and snapshot.error_message:
                line += f" ({snapshot.error_message})"
            click.echo(line)
        updates += 1
        if count and updates >= count:
            done.set()

    def on_event(event: Event) -> None:
        if json_mode:
            click.echo(json.dumps({"type": "event", "data": event.to_dict()}, default=str))
        else:
            click.echo(f"{time.strftime('%H:%M:%S')} {printer.name}: {event.type.value}")

    bus.subscribe(None, on_event, filter=lambda e: e.type.value.startswith("print."))
    manager.store.subscribe(on_status)
    manager.start_monitoring(printer)
    try:
        while not done.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        manager.stop_monitoring()


# ---------------------------------------------------------------------------
# upload / print control
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--print", "print_after", is_flag=True, help="Start printing once the upload completes.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def upload(ctx: click.Context, file_path: str, print_after: bool, json_mode: bool) -> None:
    """Send a file to the printer."""
    printer = _printer_from_ctx(ctx, json_mode)
    filename = os.path.basename(file_path)
    if printer.protocol is PrinterProtocol.ACT and not print_after:
        _fail(
            f"{printer.name} uses the ACT protocol, which cannot receive files. "
            f"Copy {filename} to the printer's storage, then run 'printerlink print {filename}'.",
            "UNSUPPORTED",
            json_mode,
        )

    dispatcher = _make_dispatcher(ctx)
    try:
        with open(file_path, "rb") as fh:
            if json_mode:
                result = dispatcher.send_to_printer(printer, fh, filename, start=print_after)
            else:
                with click.progressbar(length=1000, label=f"Uploading {filename}") as bar:
                    shown = 0

                    def on_progress(fraction: float) -> None:
                        nonlocal shown
                        target = int(fraction * 1000)
                        if target > shown:
                            bar.update(target - shown)
                            shown = target

                    result = dispatcher.send_to_printer(printer, fh, filename, on_progress, start=print_after)
    except PrinterError as exc:
        _fail(f"Failed to send {filename!r} to {printer.name}: {exc}", _error_code(exc), json_mode)
        return
    except OSError as exc:
        _fail(f"Could not read {file_path!r}: {exc}", "FILE_ERROR", json_mode)
        return

    verb = "Uploaded and started" if result.started else "Uploaded"
    click.echo(format_action("upload", f"{verb} {filename} on {printer.name}.", result.to_dict(), json_mode=json_mode))


@cli.command("print")
@click.argument("filename")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def print_cmd(ctx: click.Context, filename: str, json_mode: bool) -> None:
    """Start printing FILENAME from the printer's storage."""
    printer = _printer_from_ctx(ctx, json_mode)
    try:
        _make_dispatcher(ctx).start_print(printer, filename)
    except PrinterError as exc:
        _fail(f"Failed to start {filename!r}: {exc}", _error_code(exc), json_mode)
        return
    click.echo(format_action("start", f"Started {filename} on {printer.name}.", {"file_name": filename}, json_mode=json_mode))


def _control(ctx: click.Context, action: str, json_mode: bool) -> None:
    printer = _printer_from_ctx(ctx, json_mode)
    dispatcher = _make_dispatcher(ctx)
    handler = {
        "pause": dispatcher.pause_print,
        "resume": dispatcher.resume_print,
        "cancel": dispatcher.cancel_print,
    }[action]
    try:
        handler(printer)
    except PrinterError as exc:
        _fail(f"Failed to {action} print on {printer.name}: {exc}", _error_code(exc), json_mode)
        return
    click.echo(format_action(action, f"{action.capitalize()} sent to {printer.name}.", {"printer": printer.name}, json_mode=json_mode))


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def pause(ctx: click.Context, json_mode: bool) -> None:
    """Pause the current print."""
    _control(ctx, "pause", json_mode)


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def resume(ctx: click.Context, json_mode: bool) -> None:
    """Resume a paused print."""
    _control(ctx, "resume", json_mode)


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def cancel(ctx: click.Context, json_mode: bool) -> None:
    """Cancel the current print."""
    _control(ctx, "cancel", json_mode)


# ---------------------------------------------------------------------------
# network
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
def network(json_mode: bool) -> None:
    """Show whether local printers are reachable from this network."""
    click.echo(format_network(detect_network_path().to_dict(), json_mode=json_mode))


if __name__ == "__main__":
    cli()
