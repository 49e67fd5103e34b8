"""Structured JSON logging for livequeue."""

import json
import logging
from datetime import UTC, datetime
from typing import Any

# Dynamically derive standard LogRecord attributes at module import time
# This ensures future Python additions (like taskName) are automatically handled
_STANDARD_LOGRECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
)

# Job fields emitted first, in a stable order
_JOB_FIELDS = ("job_id", "event_type", "consumer_id", "priority", "processor")


class JSONFormatter(logging.Formatter):
    """JSON formatter with UTC ISO8601 timestamps."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for field in _JOB_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        for key, value in vars(record).items():
            if key not in _STANDARD_LOGRECORD_KEYS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, default=str)
        except Exception:
            return str(log_data)


# Level applied to livequeue loggers created without an explicit level
_default_level: int = logging.INFO


def _resolve_level(level: int | str | None) -> int:
    if level is None:
        return _default_level
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    return level


def _setup_json_handler(logger: logging.Logger, level: int | str | None) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(_resolve_level(level))
    logger.propagate = False


def configure_logging(level: int | str) -> int:
    """Set the level of every livequeue logger, present and future.

    Each livequeue logger owns its handler and does not propagate, so the
    level is applied to them one by one.

    Returns:
        The resolved numeric level.
    """
    global _default_level
    _default_level = _resolve_level(level)
    root = logging.getLogger("livequeue")
    root.setLevel(_default_level)
    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if name.startswith("livequeue.") and isinstance(logger, logging.Logger):
            logger.setLevel(_default_level)
    return _default_level


def configure_processor_logger(level: int | str | None = None) -> logging.Logger:
    """Configure and return the job processor logger with JSON formatting.

    Args:
        level: The logging level, as an int or a level name. Defaults to the
            level set by ``configure_logging`` (INFO until it is called).
    """
    logger = logging.getLogger("livequeue.processor")
    _setup_json_handler(logger, level)
    return logger


def get_logger(name: str = "livequeue", level: int | str | None = None) -> logging.Logger:
    """Get a logger with JSON formatting.

    Args:
        name: The logger name. Defaults to "livequeue".
        level: The logging level, as an int or a level name such as "DEBUG".
            Defaults to the level set by ``configure_logging``.
    """
    logger = logging.getLogger(name)
    _setup_json_handler(logger, level)
    return logger


def job_fields(job: Any, **extra: Any) -> dict[str, Any]:
    """Build the ``extra`` mapping for a log line about ``job``."""
    fields = {
        "job_id": job.id,
        "event_type": job.event_type,
        "consumer_id": job.consumer_id,
        "priority": job.priority,
        "attempts": job.attempts,
    }
    fields.update(extra)
    return fields
