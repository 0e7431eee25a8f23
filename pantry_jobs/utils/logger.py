"""
Application logging.

Log calls use an event name as the message and put details in extra=,
e.g. logger.info("job.claimed", extra={"job_id": ..., "queue": ...}).
LOG_FORMAT=json switches stdout to one JSON object per line; LOG_LEVEL sets
the level; LOG_FILE=1 adds a rotating JSON file under ./logs.
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

# Keys from extra= that are carried into the output
CONTEXT_FIELDS = (
    "job_id", "queue", "worker_id", "attempt", "owner_id", "status", "reason",
    "requeued", "exhausted", "deleted", "count",
    "service", "circuit_state", "method", "path", "duration_ms", "error", "error_type",
)


class CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = correlation_id_var.get()
        return True


def _context(record: logging.LogRecord) -> dict:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        if getattr(record, "correlation_id", ""):
            entry["correlation_id"] = record.correlation_id
        entry.update(_context(record))
        if record.levelno >= logging.WARNING:
            entry["at"] = f"{record.module}:{record.lineno}"
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class SimpleFormatter(logging.Formatter):
    """Readable single lines for local runs"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if getattr(record, "correlation_id", ""):
            context["cid"] = record.correlation_id
        if context:
            line += " | " + " ".join(f"{key}={value}" for key, value in context.items())
        return line


def setup_logger(name: str = "pantry_jobs", level: str = "INFO") -> logging.Logger:
    app_logger = logging.getLogger(name)
    if app_logger.handlers:
        return app_logger

    log_level = getattr(logging, os.getenv("LOG_LEVEL", level).upper(), logging.INFO)
    app_logger.setLevel(log_level)
    app_logger.propagate = False

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StructuredFormatter() if os.getenv("LOG_FORMAT") == "json" else SimpleFormatter())
    console.addFilter(CorrelationFilter())
    app_logger.addHandler(console)

    if os.getenv("LOG_FILE"):
        try:
            Path("logs").mkdir(exist_ok=True)
            rotating = RotatingFileHandler(
                Path("logs") / "pantry_jobs.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        except OSError as e:
            # Read-only filesystem on some hosts
            app_logger.warning(f"File logging disabled: {e}")
        else:
            rotating.setFormatter(StructuredFormatter())
            rotating.addFilter(CorrelationFilter())
            app_logger.addHandler(rotating)

    return app_logger


logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    """
    Logger under the application logger.

    Module names (pantry_jobs.client.poller) are used as-is, short names
    become children: get_logger("audit") -> pantry_jobs.audit.
    """
    if not name:
        return logger
    if name == logger.name or name.startswith(logger.name + "."):
        return logging.getLogger(name)
    return logger.getChild(name)
