"""
Logging setup for the engine process.

Records are stamped with the correlation id of the request or scheduler run
that produced them, queued, and written by a listener thread:
INFO/WARNING to stdout, ERROR/CRITICAL to stderr.
"""

import atexit
import logging
import os
import queue
import sys
from logging.handlers import QueueHandler, QueueListener
from typing import Optional

from app.utils.logging_helpers import get_correlation_id

LOG_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"

QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default", "aiogram.event", "uvicorn.access")

_listener: Optional[QueueListener] = None


class CorrelationIdFilter(logging.Filter):
    """Copies the current correlation id onto the record (in the caller's context)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or "-"
        return True


class _BelowLevel(logging.Filter):
    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def _stream_handler(stream, level: int, below: Optional[int] = None) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    if below is not None:
        handler.addFilter(_BelowLevel(below))
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def setup_logging(level: Optional[str] = None) -> None:
    """Install the queue handler on the root logger. Call once, before other imports log."""
    global _listener
    if _listener is not None:
        return

    root = logging.getLogger()
    root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    root.handlers.clear()

    records: queue.Queue = queue.Queue()
    queue_handler = QueueHandler(records)
    queue_handler.addFilter(CorrelationIdFilter())
    root.addHandler(queue_handler)

    _listener = QueueListener(
        records,
        _stream_handler(sys.stdout, logging.DEBUG, below=logging.ERROR),
        _stream_handler(sys.stderr, logging.ERROR),
        respect_handler_level=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _listener.start()
    atexit.register(shutdown_logging)


def shutdown_logging() -> None:
    """Flush queued records and stop the listener thread."""
    global _listener
    if _listener is not None:
        _listener.stop()
        _listener = None
