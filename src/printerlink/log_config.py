"""Rotating log files with credential scrubbing.

Printer records carry API keys that end up in request headers, config
dumps and exception text.  :class:`ScrubFilter` redacts them before a
record reaches any handler, and :func:`configure_logging` wires a
rotating file handler with the filter installed.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_DEFAULT_LOG_DIR = os.path.join(str(Path.home()), ".printerlink", "logs")

_REDACTED = r"\1***REDACTED***"

# Key/value style secrets: ``api_key=...``, ``"token": "..."``, etc.
_KV_VALUE = r'["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)'

_SCRUB_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(api_?key" + _KV_VALUE, re.IGNORECASE), _REDACTED),
    (re.compile(r"(token" + _KV_VALUE, re.IGNORECASE), _REDACTED),
    (re.compile(r"(password" + _KV_VALUE, re.IGNORECASE), _REDACTED),
    (re.compile(r"(secret" + _KV_VALUE, re.IGNORECASE), _REDACTED),
    (re.compile(r"(X-Api-Key" + _KV_VALUE, re.IGNORECASE), _REDACTED),
    (re.compile(r"(Authorization:\s*(?:Bearer|Basic)\s+)(\S+)", re.IGNORECASE), _REDACTED),
]


class ScrubFilter(logging.Filter):
    """Logging filter that redacts credentials from log records.

    Both the format string and its string arguments are scrubbed, so
    ``logger.info("sending %s", "X-Api-Key: abc")`` is caught too.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg and isinstance(record.msg, str):
            record.msg = _scrub(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: _scrub(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    _scrub(a) if isinstance(a, str) else a
                    for a in record.args
                )
        return True


def _scrub(text: str) -> str:
    """Apply all scrub patterns to *text*."""
    for pattern, replacement in _SCRUB_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def configure_logging(
    log_dir: Optional[str] = None,
    *,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
    level: Optional[str] = None,
) -> str:
    """Configure logging with rotation and credential scrubbing.

    :param log_dir: Directory for log files.  Reads ``PRINTERLINK_LOG_DIR``
        then falls back to ``~/.printerlink/logs/``.
    :param max_bytes: Maximum log file size before rotation (default 5 MB).
    :param backup_count: Number of rotated files to keep (default 3).
    :param level: Log level name.  Reads ``PRINTERLINK_LOG_LEVEL`` then
        falls back to ``"INFO"``.
    :returns: Path of the active log file.
    """
    log_dir = log_dir or os.environ.get("PRINTERLINK_LOG_DIR", _DEFAULT_LOG_DIR)
    level = level or os.environ.get("PRINTERLINK_LOG_LEVEL", "INFO")

    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "printerlink.log")

    log_level = getattr(logging, level.upper(), logging.INFO)

    scrub_filter = ScrubFilter()

    root = logging.getLogger()
    root.setLevel(log_level)

    has_rotating = any(isinstance(h, RotatingFileHandler) for h in root.handlers)
    if not has_rotating:
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(name)s %(levelname)s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root.addHandler(file_handler)

    for handler in root.handlers:
        if not any(isinstance(f, ScrubFilter) for f in handler.filters):
            handler.addFilter(scrub_filter)

    return log_path
