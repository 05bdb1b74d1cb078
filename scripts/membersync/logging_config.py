"""Structured JSON logging for the CLI, the scheduler and the cloud entrypoints.

Each record becomes one JSON line on stderr. ``severity`` is the field
Cloud Logging and CloudWatch Insights key on; ``thread`` tells the
reconciliation and Mailchimp worker pools apart.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Optional

LOGGER_NAMESPACE = "membersync"

EXTRA_KEYS = (
    "entity_type",
    "upserted",
    "deleted",
    "duration_s",
    "run_id",
    "job_id",
    "list_id",
    "missing_key",
)


class JsonFormatter(logging.Formatter):
    def __init__(self, extra_keys: tuple[str, ...] = EXTRA_KEYS) -> None:
        super().__init__()
        self.extra_keys = extra_keys

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        for key in self.extra_keys:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        # Dates and Decimals from the source rows show up in extras
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", stream: Optional[IO[str]] = None) -> logging.Logger:
    """Route the membersync namespace to one JSON handler; returns its logger."""
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter())
    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False
    return logger
