from __future__ import annotations

import json
import logging
import logging.config
import os
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .config import LoggingConfig

ROOT_LOGGER = "postmessage_tracker"
_RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging in files."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        # Fields passed through `extra=` land on the record itself
        extra_fields = {
            key: val
            for key, val in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key not in log_entry
        }
        if extra_fields:
            log_entry["extra"] = extra_fields
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def build_logging_config(level: str = "INFO", log_dir: Optional[str] = "logs") -> Dict[str, Any]:
    """Build the dictConfig mapping. A falsy log_dir disables the JSON file handler."""
    level = level.upper()
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "standard",
            "stream": sys.stderr,
        },
    }
    if log_dir:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": "DEBUG",
            "formatter": "json",
            "filename": os.path.join(log_dir, "postmessage_tracker.log"),
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
            "encoding": "utf8",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            },
        },
        "handlers": handlers,
        "loggers": {
            ROOT_LOGGER: {
                "level": "DEBUG",
                "handlers": list(handlers),
                "propagate": False,
            },
            "aiohttp.access": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        },
        "root": {"level": "WARNING", "handlers": ["console"]},
    }


def setup_logging(config: Optional["LoggingConfig"] = None) -> None:
    """Configure logging for the application using dictConfig."""
    level = config.level if config else "INFO"
    log_dir = config.dir if config else None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    logging.config.dictConfig(build_logging_config(level, log_dir))


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
