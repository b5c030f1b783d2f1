"""
Application logging.

Events are logged as short dotted names with their data in ``extra``:

    logger.info("task.claimed", extra={"task_id": lease.task_id, "attempt": 2})

JSON lines go to stdout when LOG_FORMAT=json or on a hosted platform. Local
runs get a compact console format plus a rotating JSON file in logs/.
"""
import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Set per request by CorrelationMiddleware
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")

_EVENT_FIELDS = (
    "correlation_id", "user_id",
    "task_id", "task_type", "attempt", "max_retries", "status", "priority",
    "provider", "circuit_state", "step", "progress", "round",
    "processed", "successful", "failed", "duration_ms", "error", "error_type",
    "method", "path", "client_ip", "wait_seconds", "recovered", "deleted",
)


class CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", ""):
            record.correlation_id = correlation_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "event": record.getMessage(),
            "logger": record.name,
        }
        for field in _EVENT_FIELDS:
            value = getattr(record, field, None)
            if value not in (None, ""):
                entry[field] = value

        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.module}:{record.lineno}"
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            entry["exception"] = {"type": type(exc).__name__, "message": str(exc)}

        return json.dumps(entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """``12:00:01 INFO task.claimed task_id=... attempt=2``"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [
            f"{field}={getattr(record, field)}"
            for field in _EVENT_FIELDS
            if field != "correlation_id" and getattr(record, field, None) not in (None, "")
        ]
        return f"{line} {' '.join(pairs)}" if pairs else line


def _wants_json() -> bool:
    return os.getenv("LOG_FORMAT", "").lower() == "json" or bool(os.getenv("RAILWAY_ENVIRONMENT"))


def setup_logger(name: str = "imgflow", level: str = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logger.setLevel(getattr(logging, level, logging.INFO))
    logger.addFilter(CorrelationFilter())

    json_output = _wants_json()
    stdout = logging.StreamHandler(sys.stdout)
    stdout.setLevel(logging.INFO)
    stdout.setFormatter(StructuredFormatter() if json_output else ConsoleFormatter())
    logger.addHandler(stdout)

    if json_output:
        return logger

    try:
        Path("logs").mkdir(exist_ok=True)
        logfile = RotatingFileHandler(
            Path("logs") / "imgflow.log", maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
    except OSError as exc:
        # Read-only filesystem
        logger.warning("logging.file_disabled", extra={"error": str(exc)})
    else:
        logfile.setLevel(logging.DEBUG)
        logfile.setFormatter(StructuredFormatter())
        logger.addHandler(logfile)

    return logger


logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    return setup_logger(name) if name else logger
