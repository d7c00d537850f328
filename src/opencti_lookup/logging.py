"""Structured logging configuration for OpenCTI lookup.

JSON to stderr by default so stdout stays clean for the MCP protocol.
Set ``OPENCTI_LOOKUP_LOG_FORMAT=text`` for human-readable output.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER_NAME = "opencti_lookup"

# Standard LogRecord attributes that are not copied into the JSON payload
_STANDARD_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})


class StructuredFormatter(logging.Formatter):
    """JSON log formatter with a consistent field set."""

    def __init__(self, service_name: str = "opencti-lookup") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        if record.levelno >= logging.WARNING:
            log_data["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
            }

        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data, default=str)


class RequestContextFilter(logging.Filter):
    """Adds a correlation id to every record emitted during one tool call.

    Thread-safety: blocking transport calls run under asyncio.to_thread(),
    so the context dict is guarded by a lock.
    """

    def __init__(self) -> None:
        super().__init__()
        self._context: dict[str, str] = {}
        self._lock = threading.Lock()

    def set_request_id(self, request_id: str | None = None) -> str:
        if request_id is None:
            request_id = str(uuid.uuid4())[:8]
        with self._lock:
            self._context["request_id"] = request_id
        return request_id

    def clear_request_id(self) -> None:
        with self._lock:
            self._context.pop("request_id", None)

    def filter(self, record: logging.LogRecord) -> bool:
        with self._lock:
            for key, value in self._context.items():
                setattr(record, key, value)
        return True


_context_filter = RequestContextFilter()


def setup_logging(
    level: int = logging.INFO,
    json_format: bool | None = None,
    service_name: str = "opencti-lookup",
) -> None:
    """Configure the package logger.

    Args:
        level: Logging level (default: INFO)
        json_format: Use JSON formatting. When None, read from
            OPENCTI_LOOKUP_LOG_FORMAT ("json" unless set to "text")
        service_name: Service name for log entries
    """
    if json_format is None:
        json_format = os.getenv("OPENCTI_LOOKUP_LOG_FORMAT", "json").strip().lower() != "text"

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    formatter: logging.Formatter
    if json_format:
        formatter = StructuredFormatter(service_name)
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(_context_filter)
    logger.addHandler(handler)
    logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the package root.

    Accepts either a bare suffix ("client") or a module ``__name__``.
    """
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def set_request_id(request_id: str | None = None) -> str:
    """Set request ID for correlation."""
    return _context_filter.set_request_id(request_id)


def clear_request_id() -> None:
    """Clear request ID after request completes."""
    _context_filter.clear_request_id()
