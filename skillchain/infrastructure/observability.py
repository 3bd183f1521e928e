"""Structured Logging: JSON formatter and setup for client observability.

Invariants:
    - All logs include timestamp, level, logger name, and message
    - Extra fields (course_id, transaction_reference, state, error_code) surfaced when present
    - JSON format by default, human-readable when log_format != "json"

Design Decisions:
    - stdlib logging with a JSONFormatter; modules log via logging.getLogger(__name__)
    - setup_logging called once by the composition root (skillchain/main.py)
"""

import logging
import json
from datetime import datetime, timezone

_EXTRA_FIELDS = (
    "course_id", "student_id", "transaction_reference", "state",
    "attempt", "error_code", "http_status", "method", "path", "event",
)


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_FIELDS:
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", fmt: str = "json"):
    """Configure logging for the client process."""
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
        ))
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
