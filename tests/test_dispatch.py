"""Tests for printerlink.printers.dispatch -- PrinterDispatcher routing.

Covers:
- Status and control calls reach the client matching the protocol tag
- Printers answering only the native endpoint poll without a job resource
- send_to_printer() for both protocols and the FILE_UPLOADED event
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from printerlink.events import EventBus, EventType
from printerlink.printers.base import (
    NATIVE_STATUS_SOURCE,
    ActStatus,
    ActStatusReport,
    HttpPrinterStatus,
    JobStatus,
    PrinterFileNotFoundError,
    PrinterRecord,
    UnreachableError,
    UploadResult,
)
from printerlink.printers.dispatch import PrinterDispatcher


@pytest.fixture()
def clients():
    return MagicMock(name="act"), MagicMock(name="http")


@pytest.fixture()
def act_record():
    return PrinterRecord(id="a", name="photon", ip_address="192.168.1.50", protocol="act")


@pytest.fixture()
def http_record():
    return PrinterRecord(id="h", name="voron", ip_address="192.168.1.60", protocol="httpREST", api_key="KEY")


class TestStatusRouting:
    """get_status dispatches on the protocol tag."""

    def test_act(self, clients, act_record):
        act, http = clients
        act.get_status.return_value = ActStatusReport(status=ActStatus.IDLE, raw_status="stop")
        result = PrinterDispatcher(act, http).get_status(act_record)
        assert isinstance(result, ActStatusReport)
        act.get_status.assert_called_once_with("192.168.1.50", 6000)
        http.get_printer_status.assert_not_called()

    def test_http(self, clients, http_record):
        act, http = clients
        http.get_printer_status.return_value = HttpPrinterStatus(state_text="Operational")
        http.get_job_status.return_value = JobStatus(state="Operational")
        printer_status, job = PrinterDispatcher(act, http).get_status(http_record)
        assert printer_status.state_text == "Operational"
        assert job.state == "Operational"
        http.get_job_status.assert_called_once_with("192.168.1.60", "KEY", 80)
        act.get_status.assert_not_called()

    def test_native_only_printer_without_job_resource(self, clients, http_record):
        act, http = clients
        http.get_printer_status.return_value = HttpPrinterStatus(
            state_text="printing", operational=True, printing=True, source=NATIVE_STATUS_SOURCE
        )
        http.get_job_status.side_effect = UnreachableError("no /api/job")
        printer_status, job = PrinterDispatcher(act, http).get_status(http_record)
        assert printer_status.printing is True
        assert job.state == "Unknown"
        assert job.progress_fraction is None

    def test_job_failure_propagates_for_octoprint(self, clients, http_record):
        act, http = clients
        http.get_printer_status.return_value = HttpPrinterStatus(state_text="Operational")
        http.get_job_status.side_effect = UnreachableError("refused")
        with pytest.raises(UnreachableError):
            PrinterDispatcher(act, http).get_status(http_record)


class TestControlRouting:
    """Print control goes to the matching client and is not retried."""

    @pytest.mark.parametrize("method", ["pause_print", "resume_print", "cancel_print"])
    def test_act_control(self, clients, act_record, method):
        act, http = clients
        getattr(PrinterDispatcher(act, http), method)(act_record)
        getattr(act, method).assert_called_once_with("192.168.1.50", api_key=None, port=6000)
        getattr(http, method).assert_not_called()

    @pytest.mark.parametrize("method", ["pause_print", "resume_print", "cancel_print"])
    def test_http_control(self, clients, http_record, method):
        act, http = clients
        getattr(PrinterDispatcher(act, http), method)(http_record)
        getattr(http, method).assert_called_once_with("192.168.1.60", api_key="KEY", port=80)

    def test_failure_propagates_once(self, clients, act_record):
        act, http = clients
        act.start_print.side_effect = PrinterFileNotFoundError("missing")
        with pytest.raises(PrinterFileNotFoundError):
            PrinterDispatcher(act, http).start_print(act_record, "x.pwmx")
        assert act.start_print.call_count == 1


class TestSendToPrinter:
    """send_to_printer for both protocols."""

    def test_http_uploads_and_prints(self, clients, http_record):
        act, http = clients
        http.upload_file.return_value = UploadResult(file_name="part.gcode", size_bytes=4, started=True)
        callback = MagicMock()
        result = PrinterDispatcher(act, http).send_to_printer(http_record, b"G28\n", "part.gcode", callback)
        assert result.started is True
        http.upload_file.assert_called_once_with(
            "192.168.1.60", b"G28\n", "part.gcode", callback, api_key="KEY", port=80, print_after=True
        )

    def test_act_starts_stored_file(self, clients, act_record):
        act, http = clients
        progress: list[float] = []
        result = PrinterDispatcher(act, http).send_to_printer(act_record, b"ignored", "model.pwmx", progress.append)
        act.start_print.assert_called_once_with("192.168.1.50", "model.pwmx", port=6000)
        assert result.started is True
        assert result.size_bytes == 0
        assert progress == [1.0]

    def test_act_cannot_store_without_printing(self, clients, act_record):
        act, http = clients
        with pytest.raises(ValueError):
            PrinterDispatcher(act, http).send_to_printer(act_record, b"", "model.pwmx", start=False)
        act.start_print.assert_not_called()

    def test_act_failure_reports_no_progress(self, clients, act_record):
        act, http = clients
        act.start_print.side_effect = PrinterFileNotFoundError("missing")
        progress: list[float] = []
        with pytest.raises(PrinterFileNotFoundError):
            PrinterDispatcher(act, http).send_to_printer(act_record, b"", "model.pwmx", progress.append)
        assert progress == []

    def test_upload_publishes_event(self, clients, http_record):
        act, http = clients
        http.upload_file.return_value = UploadResult(file_name="part.gcode", size_bytes=4, started=False)
        bus = EventBus()
        PrinterDispatcher(act, http, event_bus=bus).send_to_printer(http_record, b"G28\n", "part.gcode", start=False)
        (event,) = bus.recent_events(event_type=EventType.FILE_UPLOADED)
        assert event.data["printer_id"] == "h"
        assert event.data["file_name"] == "part.gcode"
        assert event.data["size_bytes"] == 4
        assert event.source == "printer:h"

    def test_failed_send_publishes_nothing(self, clients, act_record):
        act, http = clients
        act.start_print.side_effect = PrinterFileNotFoundError("missing")
        bus = EventBus()
        with pytest.raises(PrinterFileNotFoundError):
            PrinterDispatcher(act, http, event_bus=bus).send_to_printer(act_record, b"", "model.pwmx")
        assert bus.recent_events() == []


class TestConnectivity:
    """test_connection / is_reachable routing."""

    def test_act_test_connection(self, clients, act_record):
        act, http = clients
        act.test_connection.return_value = True
        assert PrinterDispatcher(act, http).test_connection(act_record) is True
        act.test_connection.assert_called_once_with("192.168.1.50", 6000)

    def test_http_test_connection_passes_key(self, clients, http_record):
        act, http = clients
        http.test_connection.return_value = False
        assert PrinterDispatcher(act, http).test_connection(http_record) is False
        http.test_connection.assert_called_once_with("192.168.1.60", 80, api_key="KEY")

    def test_default_clients_share_act(self):
        dispatcher = PrinterDispatcher()
        assert dispatcher.http._act is dispatcher.act
