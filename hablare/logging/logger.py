"""
Structured JSON logging for the orchestration core and its service.

Each log entry is a single JSON line carrying the service name, so request
lifecycles can be correlated across processes. Library modules only call
logging.getLogger(__name__); setup_logging() is called once by the process
that owns stdout.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from hablare.contracts.errors import ServiceError


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Fields passed through log_extra() land under "extra". Records at WARNING
    and above carry their source location, and ServiceError exceptions are
    tagged with their kind so failures can be grouped without parsing text.
    """

    def __init__(self, service_name: str, static_fields: dict[str, Any] | None = None) -> None:
        super().__init__()
        self._base = {"service": service_name, **(static_fields or {})}

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            **self._base,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.levelno >= logging.WARNING:
            entry["location"] = f"{record.module}:{record.funcName}:{record.lineno}"

        if record.exc_info and record.exc_info[1]:
            error = record.exc_info[1]
            entry["exception"] = self.formatException(record.exc_info)
            entry["error_type"] = type(error).__name__
            if isinstance(error, ServiceError):
                entry["error_kind"] = error.kind.value

        if record.stack_info:
            entry["stack"] = self.formatStack(record.stack_info)

        extra = getattr(record, "_extra", None)
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, default=str)


def log_extra(**fields: Any) -> dict[str, Any]:
    """Build the `extra=` mapping picked up by JSONFormatter."""
    return {"_extra": fields}


def setup_logging(
    service_name: str,
    level: str | None = None,
    static_fields: dict[str, Any] | None = None,
) -> logging.Logger:
    """
    Configure the root logger with JSON output to stdout.

    `level` overrides the LOG_LEVEL environment variable; `static_fields` are
    added to every entry.
    Returns the service-specific logger.
    """
    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    resolved = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name, static_fields))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(resolved)

    for noisy in ("uvicorn.access", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(service_name)
    logger.info("Logging initialized", extra=log_extra(level=level_name))
    return logger
