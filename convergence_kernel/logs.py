"""
Structured logging for the convergence kernel.

Every module logs through a child of the `convergence_kernel` logger.
`configure_logging` installs one JSON-lines handler on that parent logger;
structured fields passed via `extra={"structured": {...}}` are merged into
the emitted object.

Usage:
    from convergence_kernel.logs import configure_logging

    configure_logging(level="DEBUG")
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

ROOT_LOGGER = "convergence_kernel"


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        structured = getattr(record, "structured", None)
        if isinstance(structured, dict):
            entry.update(structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", stream: Optional[Any] = None) -> logging.Logger:
    """
    Configure the kernel's logger hierarchy with JSON output.

    Calling this again replaces the handler instead of stacking a second one.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Child logger under the kernel hierarchy, e.g. get_logger("submission.engine")."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
