"""
Structured JSON logging configuration.

Modules log through ``get_logger(__name__)`` and attach context as
``extra={"extra_data": {...}}``; both formatters render that context.
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from unified_inbox.core.config import Settings, get_settings

ROOT_LOGGER = "unified_inbox"

# Keys owned by the formatter; extra_data may not overwrite them
_RESERVED = frozenset({"timestamp", "level", "logger", "message"})


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    extra = getattr(record, "extra_data", None)
    if not isinstance(extra, dict):
        return {}
    return {k if k not in _RESERVED else f"ctx_{k}": v for k, v in extra.items()}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, ready for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(_context(record))
        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines for local development; context is appended as JSON."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if context:
            line = f"{line} {json.dumps(context, default=str)}"
        return line


def setup_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """Configure the service logger and route uvicorn's loggers through it."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if settings.log_format.lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    for name in ("uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.addHandler(handler)
        server_logger.propagate = False

    # SQL echo is controlled by settings.debug on the engine
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.debug else logging.WARNING)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
