"""JSON-lines logging for the outreach bot.

Every line carries the service name. Correlation ids found in a record's
context (chat, dialog, inbound message) are lifted to top-level keys so one
conversation can be followed with a plain field filter; the rest of the
context stays nested under "context".
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

SERVICE_NAME = "outreach-bot"
LOGGER_PREFIX = "outreach"
CORRELATION_KEYS = ("chat_id", "dialog_id", "message_id")
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    def __init__(self, service: str = SERVICE_NAME):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = dict(getattr(record, "context", None) or {})
        for key in CORRELATION_KEYS:
            if context.get(key) is not None:
                entry[key] = context.pop(key)
        if context:
            entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", stream: Optional[TextIO] = None) -> None:
    """Route the root logger to one JSON handler. Unknown level names fall back to INFO."""
    resolved = logging.getLevelName(str(level).upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(resolved if isinstance(resolved, int) else logging.INFO)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Pins fields such as chat_id onto every record; a call's context= wins on conflict."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        context = {**self.extra, **extra.get("context", {}), **(kwargs.pop("context", None) or {})}
        if context:
            extra["context"] = context
            kwargs["extra"] = extra
        return msg, kwargs


def get_chat_logger(name: str, chat_id: str, **fields) -> LoggerAdapter:
    return LoggerAdapter(get_logger(name), {"chat_id": chat_id, **fields})
