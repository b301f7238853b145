"""
Structured logging for sprite-runner.

Every record is emitted as a single JSON line on stdout:

    {"ts": "...", "level": "info", "logger": "webhook", "event": "webhook.received",
     "task_id": "...", ...}

Usage:

    configure_logging()
    log = get_logger("lifecycle", task_id=task.id)
    log.info("sprite.create", sprite_name=name)
    log.error("sprite.destroy_error", exc=e, sprite_name=name)
"""

import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any

_ROOT_LOGGER_NAME = "sprite_runner"
_configured = False


class JsonFormatter(logging.Formatter):
    """Render log records as JSON lines, merging structured fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name.removeprefix(f"{_ROOT_LOGGER_NAME}."),
            "event": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            payload.update(fields)
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    """Install the JSON handler on the package logger. Safe to call repeatedly."""
    global _configured
    if _configured:
        return

    resolved = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger(_ROOT_LOGGER_NAME)
    root.handlers = [handler]
    root.setLevel(resolved)
    root.propagate = False
    _configured = True


class StructuredLogger:
    """Thin wrapper binding static context onto every record."""

    def __init__(self, logger: logging.Logger, context: dict[str, Any]):
        self._logger = logger
        self.context = context

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self._logger, {**self.context, **context})

    def _log(self, level: int, event: str, exc: BaseException | None, fields: dict[str, Any]):
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self.context, **{k: v for k, v in fields.items() if v is not None}}
        if exc is not None:
            merged["error_type"] = type(exc).__name__
            merged["error"] = str(exc)
        self._logger.log(level, event, extra={"fields": merged})

    def debug(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.DEBUG, event, exc, fields)

    def info(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.INFO, event, exc, fields)

    def warn(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.WARNING, event, exc, fields)

    def error(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.ERROR, event, exc, fields)


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Return a structured logger named ``sprite_runner.<name>`` with bound context."""
    return StructuredLogger(logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}"), context)
