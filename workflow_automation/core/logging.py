"""Logging setup, with per-thread execution context attached to every record."""

import json
import logging
import sys
import threading
import traceback
from contextlib import contextmanager
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(funcName)s:%(lineno)d] - %(message)s"

# Library loggers that are too chatty at INFO
_LIBRARY_LEVELS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "apscheduler": logging.WARNING,
    "urllib3": logging.WARNING,
    "asyncio": logging.WARNING,
}


class StructuredFormatter(logging.Formatter):
    """Formats each record as one JSON object.

    Context fields such as ``execution_id`` and ``workflow_id`` are emitted at
    the top level so that log lines of one execution can be filtered easily.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(getattr(record, "context_fields", {}))

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }
        return json.dumps(entry, default=str)


class ExecutionContextFilter(logging.Filter):
    """Copies the current thread's context fields onto each record.

    Executions run on pool workers, so fields are kept per thread and an
    execution ID set on one worker never appears on another worker's records.
    """

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    @property
    def fields(self) -> Dict[str, Any]:
        if not hasattr(self._local, "fields"):
            self._local.fields = {}
        return self._local.fields

    def filter(self, record: logging.LogRecord) -> bool:
        record.context_fields = {**getattr(record, "context_fields", {}), **self.fields}
        return True


_context_filter = ExecutionContextFilter()


def _build_handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(_context_filter)
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger. Calling it again replaces the previous handlers.

    Args:
        level: Logging level name
        log_file: Also write to this file, rotated at ``max_size`` bytes
        log_format: Format string for plain-text output
        structured: Emit JSON lines instead of plain text
        max_size: Bytes before the log file rotates
        backup_count: Rotated files to keep

    Returns:
        The root logger
    """
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    root_logger.addHandler(_build_handler(logging.StreamHandler(sys.stdout), formatter))
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count)
        root_logger.addHandler(_build_handler(file_handler, formatter))

    for name, library_level in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**fields):
    """Attach fields to every record logged on this thread from now on."""
    _context_filter.fields.update(fields)


def clear_logging_context():
    _context_filter.fields.clear()


@contextmanager
def logging_context(**fields):
    """Attach fields to records logged on this thread inside the block."""
    previous = dict(_context_filter.fields)
    set_logging_context(**fields)
    try:
        yield
    finally:
        clear_logging_context()
        set_logging_context(**previous)
