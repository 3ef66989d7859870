"""
Logging configuration for wasmverify.

Plain text logs for terminals, structured JSON logs for automation. Every
record emitted while a request is being processed carries its request id.
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"


class RequestIdFilter(logging.Filter):
    """Attach the current request id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter: one object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


@contextmanager
def request_context(request_id: Optional[str]) -> Iterator[None]:
    """Bind ``request_id`` to log records for the duration of the block."""
    token = request_id_var.set(request_id or '')
    try:
        yield
    finally:
        request_id_var.reset(token)


def configure_logging(level: str = "INFO", json_format: bool = False, stream=None) -> logging.Handler:
    """Install a single handler on the ``wasmverify`` logger."""
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.addFilter(RequestIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger = logging.getLogger("wasmverify")
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return handler
