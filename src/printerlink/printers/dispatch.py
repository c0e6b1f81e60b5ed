"""Protocol routing for stored printer records.

:class:`PrinterDispatcher` picks the ACT or HTTP client from a record's
protocol tag so the connection manager and the CLI never branch on
protocol themselves.
"""

from __future__ import annotations

import logging
from typing import IO, Optional, Tuple, Union

from printerlink.events import EventBus, EventType
from printerlink.printers.act import ActClient
from printerlink.printers.base import (
    NATIVE_STATUS_SOURCE,
    ActStatusReport,
    HttpPrinterStatus,
    JobStatus,
    PrinterError,
    PrinterProtocol,
    PrinterRecord,
    UploadResult,
)
from printerlink.printers.octoprint import HttpPrinterClient, ProgressCallback

logger = logging.getLogger(__name__)

# Raw result of one status poll: an ACT report, or HTTP printer + job state.
StatusResult = Union[ActStatusReport, Tuple[HttpPrinterStatus, JobStatus]]


class PrinterDispatcher:
    """Routes printer operations to the client matching the protocol tag.

    With an *event_bus*, a completed :meth:`send_to_printer` publishes
    ``FILE_UPLOADED``.
    """

    def __init__(
        self,
        act: Optional[ActClient] = None,
        http: Optional[HttpPrinterClient] = None,
        *,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self.act = act or ActClient()
        self.http = http or HttpPrinterClient(act_client=self.act)
        self._bus = event_bus

    def test_connection(self, printer: PrinterRecord) -> bool:
        """Connectivity test used by the add-printer flow; failures raise."""
        if printer.protocol is PrinterProtocol.ACT:
            return self.act.test_connection(printer.ip_address, printer.port)
        return self.http.test_connection(printer.ip_address, printer.port, api_key=printer.api_key)

    def is_reachable(self, printer: PrinterRecord) -> bool:
        return self.http.is_reachable(printer.ip_address, printer.protocol, printer.port)

    def get_status(self, printer: PrinterRecord) -> StatusResult:
        """One status poll.

        ACT printers answer a single ``getstatus``; HTTP printers need both
        ``/api/printer`` and ``/api/job``.  Firmware that only serves the
        Anycubic native endpoint has no job resource, so a failed job query
        is reported as an unknown job rather than a failed poll.
        """
        if printer.protocol is PrinterProtocol.ACT:
            return self.act.get_status(printer.ip_address, printer.port)
        printer_status = self.http.get_printer_status(printer.ip_address, printer.api_key, printer.port)
        try:
            job_status = self.http.get_job_status(printer.ip_address, printer.api_key, printer.port)
        except PrinterError as exc:
            if printer_status.source != NATIVE_STATUS_SOURCE:
                raise
            logger.debug("No job status from %s (native endpoint only): %s", printer.name, exc)
            job_status = JobStatus(state="Unknown")
        return printer_status, job_status

    def start_print(self, printer: PrinterRecord, filename: str) -> None:
        client = self.act if printer.protocol is PrinterProtocol.ACT else self.http
        client.start_print(printer.ip_address, filename, api_key=printer.api_key, port=printer.port)

    def pause_print(self, printer: PrinterRecord) -> None:
        client = self.act if printer.protocol is PrinterProtocol.ACT else self.http
        client.pause_print(printer.ip_address, api_key=printer.api_key, port=printer.port)

    def resume_print(self, printer: PrinterRecord) -> None:
        client = self.act if printer.protocol is PrinterProtocol.ACT else self.http
        client.resume_print(printer.ip_address, api_key=printer.api_key, port=printer.port)

    def cancel_print(self, printer: PrinterRecord) -> None:
        client = self.act if printer.protocol is PrinterProtocol.ACT else self.http
        client.cancel_print(printer.ip_address, api_key=printer.api_key, port=printer.port)

    def send_to_printer(
        self,
        printer: PrinterRecord,
        data: Union[bytes, IO[bytes]],
        filename: str,
        on_progress: Optional[ProgressCallback] = None,
        *,
        start: bool = True,
    ) -> UploadResult:
        """Deliver a job to *printer*.

        HTTP printers receive the file by multipart upload and, with
        *start*, select and print it in the same request.  ACT printers
        cannot receive files: the file must already be on the printer's
        storage, *data* is not transferred, and sending is the same
        action as starting the print.
        """
        if printer.protocol is PrinterProtocol.ACT:
            if not start:
                raise ValueError("ACT printers cannot store a file without printing it")
            logger.debug("ACT printer %s: starting stored file %s without transfer", printer.name, filename)
            self.act.start_print(printer.ip_address, filename, port=printer.port)
            if on_progress is not None:
                on_progress(1.0)
            result = UploadResult(file_name=filename, size_bytes=0, started=True)
        else:
            result = self.http.upload_file(
                printer.ip_address,
                data,
                filename,
                on_progress,
                api_key=printer.api_key,
                port=printer.port,
                print_after=start,
            )

        if self._bus is not None:
            payload = {"printer_id": printer.id, "printer_name": printer.name, **result.to_dict()}
            self._bus.publish(EventType.FILE_UPLOADED, payload, source=f"printer:{printer.id}")
        return result
