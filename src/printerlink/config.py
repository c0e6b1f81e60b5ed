"""Configuration management for printerlink.

Saved printers and client settings live in ``~/.printerlink/config.yaml``
(override the location with ``PRINTERLINK_CONFIG``)::

    active_printer: workshop
    printers:
      workshop:
        id: 3f2c...
        ip: 192.168.1.50
        protocol: act
        port: 6000
      voron:
        id: 9ab1...
        ip: 192.168.1.60
        protocol: httpREST
        api_key: ABCDEF
    settings:
      poll_interval: 5
      act_timeout: 5
      http_timeout: 10
      probe_timeout: 2
      sweep_workers: 24
      act_commands:
        status: getstatus

Precedence (highest first):
    1. CLI flags (``--printer``)
    2. Environment variables (``PRINTERLINK_POLL_INTERVAL``, etc.)
    3. Config file
    4. Built-in defaults
"""

from __future__ import annotations

import contextlib
import logging
import os
import stat
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from printerlink import parse_float_env, parse_int_env
from printerlink.printers.act import ActCommandSet
from printerlink.printers.base import PrinterProtocol, PrinterRecord

logger = logging.getLogger(__name__)

_KNOWN_KEYS: set[str] = {"printers", "active_printer", "settings"}

_KNOWN_SETTINGS: set[str] = {
    "poll_interval",
    "act_timeout",
    "http_timeout",
    "probe_timeout",
    "sweep_workers",
    "act_commands",
}


def get_config_path() -> Path:
    """Return the config file path (``PRINTERLINK_CONFIG`` or the default)."""
    env_path = os.environ.get("PRINTERLINK_CONFIG", "").strip()
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".printerlink" / "config.yaml"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass
class Settings:
    """Client and polling settings after applying all overrides."""

    poll_interval: float = 5.0
    act_timeout: float = 5.0
    http_timeout: float = 10.0
    probe_timeout: float = 2.0
    sweep_workers: int = 24
    act_commands: ActCommandSet = field(default_factory=ActCommandSet)


def _setting(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key)
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning("Config setting %s=%r is not a number, using %s", key, value, default)
        return default
    if number <= 0:
        logger.warning("Config setting %s=%r must be positive, using %s", key, value, default)
        return default
    return number


def load_settings(*, config_path: Path | None = None) -> Settings:
    """Resolve settings from defaults, the config file and the environment."""
    raw = _read_config_file(config_path or get_config_path())
    section = raw.get("settings", {})
    if not isinstance(section, dict):
        section = {}
    for key in sorted(set(section) - _KNOWN_SETTINGS):
        logger.warning("Ignoring unknown setting %r", key)

    defaults = Settings()
    commands = section.get("act_commands")
    return Settings(
        poll_interval=parse_float_env(
            "PRINTERLINK_POLL_INTERVAL", _setting(section, "poll_interval", defaults.poll_interval)
        ),
        act_timeout=parse_float_env("PRINTERLINK_ACT_TIMEOUT", _setting(section, "act_timeout", defaults.act_timeout)),
        http_timeout=parse_float_env(
            "PRINTERLINK_HTTP_TIMEOUT", _setting(section, "http_timeout", defaults.http_timeout)
        ),
        probe_timeout=parse_float_env(
            "PRINTERLINK_PROBE_TIMEOUT", _setting(section, "probe_timeout", defaults.probe_timeout)
        ),
        sweep_workers=parse_int_env(
            "PRINTERLINK_SWEEP_WORKERS", int(_setting(section, "sweep_workers", defaults.sweep_workers))
        ),
        act_commands=ActCommandSet.from_dict(commands if isinstance(commands, dict) else None),
    )


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------


def _check_file_permissions(path: Path) -> None:
    """Warn if *path* is readable by group or others."""
    if sys.platform == "win32":
        return
    try:
        mode = path.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH):
            logger.warning(
                "Config file %s has overly permissive permissions (mode %04o). Recommended: chmod 600 %s",
                path,
                stat.S_IMODE(mode),
                path,
            )
    except OSError:
        pass


def _secure_dir(dir_path: Path) -> None:
    if sys.platform == "win32":
        return
    with contextlib.suppress(OSError):
        dir_path.chmod(0o700)


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` on any failure."""
    if not path.is_file():
        return {}
    _check_file_permissions(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        logger.warning("Config file %s has invalid YAML: %s", path, exc)
        return {}
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        return {}
    for key in sorted(set(data) - _KNOWN_KEYS):
        logger.warning("Config file %s contains unknown key %r", path, key)
    return data


def _write_config_file(path: Path, data: dict[str, Any]) -> None:
    """Write *data* as YAML with ``0600`` permissions in a ``0700`` directory.

    The file may hold API keys.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    _secure_dir(path.parent)
    with path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(data, fh, default_flow_style=False, sort_keys=False)
    if sys.platform != "win32":
        with contextlib.suppress(OSError):
            path.chmod(0o600)


def _printers_section(raw: dict[str, Any]) -> dict[str, Any]:
    printers = raw.get("printers", {})
    return printers if isinstance(printers, dict) else {}


def _record_from_entry(name: str, entry: dict[str, Any]) -> PrinterRecord:
    ip = str(entry.get("ip") or "").strip()
    if not ip:
        raise ValueError(f"Printer {name!r} has no ip address in the config file")
    try:
        protocol = PrinterProtocol.from_tag(str(entry.get("protocol", "")))
    except ValueError as exc:
        raise ValueError(f"Printer {name!r}: {exc}") from exc
    port = entry.get("port")
    return PrinterRecord(
        id=str(entry.get("id") or name),
        name=name,
        ip_address=ip,
        protocol=protocol,
        port=int(port) if port else None,
        api_key=entry.get("api_key") or None,
        serial_number=entry.get("serial") or None,
        firmware_version=entry.get("firmware") or None,
        model=entry.get("model") or None,
    )


def load_printer(
    printer_name: str | None = None,
    *,
    config_path: Path | None = None,
) -> PrinterRecord:
    """Resolve one saved printer: *printer_name*, else the active one.

    With a single saved printer and no active one set, that printer is
    used.  Raises :class:`ValueError` when nothing usable is found.
    """
    raw = _read_config_file(config_path or get_config_path())
    printers = _printers_section(raw)

    name = printer_name or raw.get("active_printer")
    if not name:
        if len(printers) == 1:
            name = next(iter(printers))
        elif not printers:
            raise ValueError(
                "No printers configured. Run 'printerlink discover' to find printers, "
                "then 'printerlink add <name> <ip>' to save one."
            )
        else:
            raise ValueError(
                "Multiple printers configured but no active printer set.  "
                "Run 'printerlink use <name>' to select one, or pass --printer."
            )

    entry = printers.get(name)
    if not isinstance(entry, dict):
        raise ValueError(
            f"Printer {name!r} not found in config. "
            f"Available: {', '.join(printers) or '(none)'}. "
            "Run 'printerlink printers' to list all."
        )
    return _record_from_entry(str(name), entry)


def list_printers(*, config_path: Path | None = None) -> list[dict[str, Any]]:
    """Return saved printers with name, protocol, address and active flag."""
    raw = _read_config_file(config_path or get_config_path())
    active = raw.get("active_printer", "")
    result: list[dict[str, Any]] = []
    for name, entry in _printers_section(raw).items():
        if not isinstance(entry, dict):
            continue
        result.append(
            {
                "name": name,
                "protocol": entry.get("protocol", "unknown"),
                "ip": entry.get("ip", ""),
                "port": entry.get("port"),
                "model": entry.get("model"),
                "active": name == active,
            }
        )
    return result


# ---------------------------------------------------------------------------
# Save / mutate
# ---------------------------------------------------------------------------


def save_printer(
    printer: PrinterRecord,
    *,
    set_active: bool = True,
    config_path: Path | None = None,
) -> Path:
    """Add or update *printer* under its name.  Returns the config path.

    An existing entry keeps its id so live status history stays attached.
    """
    path = config_path or get_config_path()
    raw = _read_config_file(path)
    printers = raw.setdefault("printers", {})
    if not isinstance(printers, dict):
        raw["printers"] = printers = {}

    existing = printers.get(printer.name)
    printer_id = existing.get("id") if isinstance(existing, dict) and existing.get("id") else printer.id
    entry: dict[str, Any] = {
        "id": printer_id or uuid.uuid4().hex,
        "ip": printer.ip_address,
        "protocol": printer.protocol.value,
        "port": printer.port,
    }
    if printer.api_key:
        entry["api_key"] = printer.api_key
    if printer.serial_number:
        entry["serial"] = printer.serial_number
    if printer.model:
        entry["model"] = printer.model
    if printer.firmware_version:
        entry["firmware"] = printer.firmware_version

    printers[printer.name] = entry
    if set_active or "active_printer" not in raw:
        raw["active_printer"] = printer.name

    _write_config_file(path, raw)
    logger.info("Saved printer %r (%s %s)", printer.name, printer.protocol.value, printer.ip_address)
    return path


def set_active_printer(name: str, *, config_path: Path | None = None) -> None:
    """Set the active printer.  Raises :class:`ValueError` if unknown."""
    path = config_path or get_config_path()
    raw = _read_config_file(path)
    printers = _printers_section(raw)
    if name not in printers:
        raise ValueError(f"Printer {name!r} not found.  Available: {', '.join(printers) or '(none)'}")
    raw["active_printer"] = name
    _write_config_file(path, raw)


def remove_printer(name: str, *, config_path: Path | None = None) -> None:
    """Remove a saved printer, moving the active flag if needed."""
    path = config_path or get_config_path()
    raw = _read_config_file(path)
    printers = _printers_section(raw)
    if name not in printers:
        raise ValueError(f"Printer {name!r} not found.")

    del printers[name]
    raw["printers"] = printers
    if raw.get("active_printer") == name:
        if printers:
            raw["active_printer"] = next(iter(printers))
        else:
            raw.pop("active_printer", None)
    _write_config_file(path, raw)
