"""
Logging setup for the Kori sync service.

Modules log through ``logging.getLogger(__name__)``; this module only installs
the root handler. Two formats are available: plain text for development and
one JSON object per line for log aggregation.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

# Forwarded from logger.info(..., extra={...})
_STRUCTURED_FIELDS = ("pet_id", "connection", "message_type", "channel")

_NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "websockets",
    "uvicorn.access",
)


class StructuredFormatter(logging.Formatter):
    """JSON log formatter. Each record becomes a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for key in _STRUCTURED_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure the root logger.

    Call once at startup. Replaces existing root handlers so repeated calls
    do not duplicate output.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()

    if fmt == "json":
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("kori_sync").debug(
        "Logging configured (level=%s, format=%s)", level, fmt
    )
