"""Tests for printerlink.config -- saved printers and settings.

Covers:
- Settings defaults, file values and environment precedence
- Invalid setting values fall back to defaults
- ACT command overrides from the config file
- Saving, loading, listing, activating and removing printers
- Config file written with 0600 permissions
- Invalid YAML and unknown keys are tolerated
"""

from __future__ import annotations

import logging
import stat
import sys
from pathlib import Path

import pytest
import yaml

from printerlink.config import (
    _check_file_permissions,
    _read_config_file,
    _write_config_file,
    get_config_path,
    list_printers,
    load_printer,
    load_settings,
    remove_printer,
    save_printer,
    set_active_printer,
)
from printerlink.printers.base import PrinterProtocol, PrinterRecord


@pytest.fixture()
def config_path(tmp_path) -> Path:
    return tmp_path / "cfg" / "config.yaml"


def _write(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    path.chmod(0o600)


def _act(name="photon", ip="192.168.1.50", **kwargs) -> PrinterRecord:
    return PrinterRecord(id=kwargs.pop("id", ""), name=name, ip_address=ip, protocol="act", **kwargs)


class TestConfigPath:
    """Tests for get_config_path."""

    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PRINTERLINK_CONFIG", str(tmp_path / "x.yaml"))
        assert get_config_path() == tmp_path / "x.yaml"

    def test_default(self, monkeypatch):
        monkeypatch.delenv("PRINTERLINK_CONFIG")
        assert get_config_path() == Path.home() / ".printerlink" / "config.yaml"


class TestSettings:
    """Tests for load_settings precedence."""

    def test_defaults(self, config_path):
        settings = load_settings(config_path=config_path)
        assert settings.poll_interval == 5.0
        assert settings.act_timeout == 5.0
        assert settings.http_timeout == 10.0
        assert settings.sweep_workers == 24
        assert settings.act_commands.status == "getstatus"

    def test_file_values(self, config_path):
        _write(config_path, {"settings": {"poll_interval": 2, "sweep_workers": 8}})
        settings = load_settings(config_path=config_path)
        assert settings.poll_interval == 2.0
        assert settings.sweep_workers == 8

    def test_env_beats_file(self, config_path, monkeypatch):
        _write(config_path, {"settings": {"poll_interval": 2}})
        monkeypatch.setenv("PRINTERLINK_POLL_INTERVAL", "7.5")
        assert load_settings(config_path=config_path).poll_interval == 7.5

    def test_invalid_env_uses_file_value(self, config_path, monkeypatch):
        _write(config_path, {"settings": {"act_timeout": 3}})
        monkeypatch.setenv("PRINTERLINK_ACT_TIMEOUT", "soon")
        assert load_settings(config_path=config_path).act_timeout == 3.0

    @pytest.mark.parametrize("value", [-1, 0, "fast"])
    def test_invalid_file_value(self, config_path, value, caplog):
        _write(config_path, {"settings": {"http_timeout": value}})
        assert load_settings(config_path=config_path).http_timeout == 10.0
        assert "http_timeout" in caplog.text

    def test_act_command_override(self, config_path):
        _write(config_path, {"settings": {"act_commands": {"status": "getstatus2"}}})
        commands = load_settings(config_path=config_path).act_commands
        assert commands.status == "getstatus2"
        assert commands.start_print == "goprint"

    def test_unknown_setting_warns(self, config_path, caplog):
        _write(config_path, {"settings": {"turbo": True}})
        load_settings(config_path=config_path)
        assert "turbo" in caplog.text


class TestReadWrite:
    """File-level behaviour."""

    def test_missing_file(self, config_path):
        assert _read_config_file(config_path) == {}

    def test_invalid_yaml(self, config_path, caplog):
        config_path.parent.mkdir(parents=True)
        config_path.write_text("printers: [unclosed\n")
        assert _read_config_file(config_path) == {}
        assert "invalid YAML" in caplog.text

    def test_non_mapping(self, config_path):
        _write(config_path, ["a", "b"])
        assert _read_config_file(config_path) == {}

    def test_unknown_top_level_key(self, config_path, caplog):
        _write(config_path, {"printers": {}, "colour": "blue"})
        _read_config_file(config_path)
        assert "colour" in caplog.text

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_written_0600(self, config_path):
        _write_config_file(config_path, {"printers": {}})
        assert stat.S_IMODE(config_path.stat().st_mode) == 0o600
        assert stat.S_IMODE(config_path.parent.stat().st_mode) == 0o700

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_permissive_file_warns(self, config_path, caplog):
        _write(config_path, {"printers": {}})
        config_path.chmod(0o644)
        with caplog.at_level(logging.WARNING, logger="printerlink.config"):
            _check_file_permissions(config_path)
        assert any("permissive" in r.message.lower() for r in caplog.records)


class TestSavedPrinters:
    """Saving, loading and selecting printers."""

    def test_save_and_load(self, config_path):
        save_printer(_act(model="Photon Mono X", serial_number="SER1"), config_path=config_path)
        printer = load_printer("photon", config_path=config_path)
        assert printer.protocol is PrinterProtocol.ACT
        assert printer.ip_address == "192.168.1.50"
        assert printer.port == 6000
        assert printer.model == "Photon Mono X"
        assert printer.serial_number == "SER1"
        assert printer.id

    def test_http_printer_keeps_api_key(self, config_path):
        record = PrinterRecord(id="h1", name="voron", ip_address="192.168.1.60", protocol="http", api_key="KEY")
        save_printer(record, config_path=config_path)
        loaded = load_printer("voron", config_path=config_path)
        assert loaded.protocol is PrinterProtocol.HTTP_REST
        assert loaded.api_key == "KEY"
        assert loaded.id == "h1"
        raw = yaml.safe_load(config_path.read_text())
        assert raw["printers"]["voron"]["protocol"] == "httpREST"

    def test_resave_keeps_id(self, config_path):
        save_printer(_act(id="first"), config_path=config_path)
        save_printer(_act(id="second", ip="192.168.1.51"), config_path=config_path)
        loaded = load_printer("photon", config_path=config_path)
        assert loaded.id == "first"
        assert loaded.ip_address == "192.168.1.51"

    def test_active_printer_used_by_default(self, config_path):
        save_printer(_act("a"), config_path=config_path)
        save_printer(_act("b", ip="192.168.1.51"), config_path=config_path)
        assert load_printer(config_path=config_path).name == "b"
        set_active_printer("a", config_path=config_path)
        assert load_printer(config_path=config_path).name == "a"

    def test_save_without_activating(self, config_path):
        save_printer(_act("a"), config_path=config_path)
        save_printer(_act("b"), set_active=False, config_path=config_path)
        assert load_printer(config_path=config_path).name == "a"

    def test_single_printer_without_active(self, config_path):
        _write(config_path, {"printers": {"solo": {"ip": "10.0.0.2", "protocol": "act"}}})
        printer = load_printer(config_path=config_path)
        assert printer.name == "solo"
        assert printer.id == "solo"

    def test_no_printers(self, config_path):
        with pytest.raises(ValueError, match="printerlink discover"):
            load_printer(config_path=config_path)

    def test_ambiguous(self, config_path):
        _write(
            config_path,
            {"printers": {"a": {"ip": "10.0.0.2", "protocol": "act"}, "b": {"ip": "10.0.0.3", "protocol": "act"}}},
        )
        with pytest.raises(ValueError, match="printerlink use"):
            load_printer(config_path=config_path)

    def test_unknown_name(self, config_path):
        save_printer(_act(), config_path=config_path)
        with pytest.raises(ValueError, match="not found"):
            load_printer("ghost", config_path=config_path)

    def test_entry_without_ip(self, config_path):
        _write(config_path, {"printers": {"x": {"protocol": "act"}}})
        with pytest.raises(ValueError, match="no ip"):
            load_printer("x", config_path=config_path)

    def test_entry_with_bad_protocol(self, config_path):
        _write(config_path, {"printers": {"x": {"ip": "10.0.0.2", "protocol": "mqtt"}}})
        with pytest.raises(ValueError, match="Unknown printer protocol"):
            load_printer("x", config_path=config_path)

    def test_list_printers(self, config_path):
        save_printer(_act("a"), config_path=config_path)
        save_printer(_act("b", ip="192.168.1.51"), set_active=False, config_path=config_path)
        listed = {p["name"]: p for p in list_printers(config_path=config_path)}
        assert listed["a"]["active"] is True
        assert listed["b"]["active"] is False
        assert listed["b"]["ip"] == "192.168.1.51"
        assert listed["a"]["protocol"] == "act"

    def test_set_active_unknown(self, config_path):
        with pytest.raises(ValueError):
            set_active_printer("ghost", config_path=config_path)

    def test_remove_moves_active(self, config_path):
        save_printer(_act("a"), config_path=config_path)
        save_printer(_act("b"), config_path=config_path)
        remove_printer("b", config_path=config_path)
        assert [p["name"] for p in list_printers(config_path=config_path)] == ["a"]
        assert load_printer(config_path=config_path).name == "a"

    def test_remove_last(self, config_path):
        save_printer(_act("a"), config_path=config_path)
        remove_printer("a", config_path=config_path)
        raw = yaml.safe_load(config_path.read_text())
        assert "active_printer" not in raw

    def test_remove_unknown(self, config_path):
        with pytest.raises(ValueError):
            remove_printer("ghost", config_path=config_path)

    def test_env_config_path(self):
        save_printer(_act())
        assert get_config_path().is_file()
        assert load_printer().name == "photon"
