"""Structured JSON logging for the pool proxy.

Every logger under the ``copilot_pool`` namespace writes single-line JSON
to stdout (and optionally a file), tagged with the current request id and
the account the request was bound to.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

from copilot_pool.config.settings import get_settings

ROOT_LOGGER = "copilot_pool"

# Request-scoped context for correlating log entries
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
account_id_var: ContextVar[str] = ContextVar("account_id", default="")


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(""),
        }
        account_id = account_id_var.get("")
        if account_id:
            log_entry["account_id"] = account_id
        if hasattr(record, "audit_data"):
            log_entry.update(record.audit_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging() -> None:
    """Attach JSON handlers to the package root logger."""
    settings = get_settings()

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = JSONFormatter()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    if settings.audit_log_file:
        file_handler = logging.FileHandler(settings.audit_log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Avoid duplicate lines through the root logger
    logger.propagate = False


def get_logger(component: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{component}")


def get_audit_logger() -> logging.Logger:
    return get_logger("audit")


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]


class RequestTimer:
    """Context manager to measure request latency."""

    def __init__(self):
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
