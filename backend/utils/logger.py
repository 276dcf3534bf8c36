import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from utils.utcnow import utcnow

SENSITIVE_KEY_PARTS = ("token", "api_key", "secret", "password", "authorization")
REDACTED = "[REDACTED]"

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite", "sqlalchemy.engine")


def sanitize_for_logging(data: Any) -> Any:
    """Redact values whose key looks like a credential, including nested dicts."""
    if isinstance(data, dict):
        return {
            key: REDACTED
            if any(part in str(key).lower() for part in SENSITIVE_KEY_PARTS)
            else sanitize_for_logging(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize_for_logging(item) for item in data]
    return data


class JSONFormatter(logging.Formatter):
    """One JSON object per record; structured fields go under ``data``."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        fields = getattr(record, "fields", None)
        if fields:
            log_data["data"] = fields
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class PlainFormatter(logging.Formatter):
    """Human-readable formatter that appends structured fields as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = getattr(record, "fields", None)
        if not fields:
            return base
        return base + " | " + " ".join(f"{k}={v}" for k, v in fields.items())


class ContextLogger:
    """Logger that takes structured fields as keyword arguments.

    ``logger.info("Signal created", pair="ETH", participants=3)`` attaches the
    keyword arguments to the record; ``with_context`` binds fields that every
    later call repeats (a worker name, for instance). Credential-like keys are
    redacted before the record is emitted.
    """

    def __init__(self, name: str, context: Optional[dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self._context: dict[str, Any] = dict(context or {})

    def with_context(self, **kwargs: Any) -> "ContextLogger":
        return ContextLogger(self.logger.name, {**self._context, **kwargs})

    def _log(self, level: int, msg: str, exc_info: Any = None, **fields: Any):
        if not self.logger.isEnabledFor(level):
            return
        merged = {**self._context, **fields}
        self.logger.log(
            level,
            msg,
            exc_info=exc_info,
            stacklevel=3,  # report the caller, not this wrapper
            extra={"fields": sanitize_for_logging(merged) if merged else None},
        )

    def debug(self, msg: str, **fields: Any):
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any):
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any):
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, **fields: Any):
        self._log(logging.ERROR, msg, **fields)


def setup_logging(level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None):
    """Configure the root logger for an API or worker process"""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    if json_format:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(PlainFormatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(name)


# Component loggers
api_logger = get_logger("api")
ingestion_logger = get_logger("ingestion")
detector_logger = get_logger("consensus_detector")
monitor_logger = get_logger("price_monitor")
worker_logger = get_logger("worker")
