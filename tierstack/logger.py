"""
Structured JSON logging
=======================
One JSON object per line so deployment logs can be filtered by stack,
attempt or status:

    {"timestamp": "2024-01-01T00:00:00Z", "level": "INFO",
     "logger": "tierstack.orchestrator", "message": "Stack available",
     "stack": "quarkfin-network-dev", "attempt": 1}

Usage:
    logger = logging.getLogger(__name__)
    configure_logging("INFO")  # once, from the CLI
    logger.info("Stack available", extra={"stack": name})
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any

# Standard logging.LogRecord fields we don't want in the output
_STDLIB_FIELDS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "taskName",
}

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        log_obj: dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        for key, value in record.__dict__.items():
            if key not in _STDLIB_FIELDS:
                log_obj[key] = value

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def configure_logging(level: str = "INFO") -> None:
    """Install the JSON formatter on the root logger and set its level."""
    root = logging.getLogger()
    formatter = JsonFormatter()
    if root.handlers:
        for h in root.handlers:
            h.setFormatter(formatter)
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

