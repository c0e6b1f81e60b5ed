"""Printer protocol clients.

Re-exports the public API so consumers can write::

    from printerlink.printers import ActClient, HttpPrinterClient, PrinterRecord
"""

from __future__ import annotations

from printerlink.printers.act import ActClient, ActCommandSet
from printerlink.printers.base import (
    ActStatus,
    ActStatusReport,
    ActSystemInfo,
    CommandRejectedError,
    DecodeError,
    DeviceInfo,
    HTTPStatusError,
    HttpPrinterStatus,
    JobStatus,
    MalformedResponseError,
    NetworkError,
    PrinterError,
    PrinterFile,
    PrinterFileNotFoundError,
    PrinterProtocol,
    PrinterRecord,
    PrinterTimeoutError,
    ScanSetupError,
    TemperatureReading,
    UnreachableError,
    UploadResult,
)
from printerlink.printers.dispatch import PrinterDispatcher
from printerlink.printers.octoprint import HttpPrinterClient

__all__ = [
    "ActClient",
    "ActCommandSet",
    "ActStatus",
    "ActStatusReport",
    "ActSystemInfo",
    "CommandRejectedError",
    "DecodeError",
    "DeviceInfo",
    "HTTPStatusError",
    "HttpPrinterClient",
    "HttpPrinterStatus",
    "JobStatus",
    "MalformedResponseError",
    "NetworkError",
    "PrinterDispatcher",
    "PrinterError",
    "PrinterFile",
    "PrinterFileNotFoundError",
    "PrinterProtocol",
    "PrinterRecord",
    "PrinterTimeoutError",
    "ScanSetupError",
    "TemperatureReading",
    "UnreachableError",
    "UploadResult",
]
