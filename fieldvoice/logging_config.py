"""
FIELDVOICE Logging Configuration

Centralized logging setup for the voice command pipeline:
- Console output on stdout
- Optional rotating file handler with size limits
- Optional single-line JSON records (machine-parseable)
- Per-component log level configuration

Usage:
    from fieldvoice.logging_config import setup_logging, get_logger

    setup_logging(log_level="INFO", log_file="fieldvoice.log")

    logger = get_logger(__name__)
    logger.info("Capture started", extra={"device": "default"})
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5

# Component loggers use the upper-case prefix, module loggers the package name
ROOT_LOGGER_NAMES = ("fieldvoice", "FIELDVOICE")

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Attributes every LogRecord has; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_formatter(json_format: bool) -> logging.Formatter:
    if json_format:
        return JsonFormatter()
    return logging.Formatter(DEFAULT_LOG_FORMAT, DEFAULT_DATE_FORMAT)


def setup_logging(
    log_level: str = DEFAULT_LOG_LEVEL,
    log_file: Optional[str | Path] = None,
    json_format: bool = False,
) -> None:
    """Configure logging for the FIELDVOICE pipeline.

    Sets up the package loggers with a console handler and an optional
    rotating file handler. Should be called once at application startup;
    calling it again replaces the handlers.

    Args:
        log_level: Default logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file. Enables file logging with rotation.
        json_format: If True, emit structured JSON records.
    """
    level = LOG_LEVELS.get(log_level.upper(), logging.INFO)
    formatter = _build_formatter(json_format)

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        from logging.handlers import RotatingFileHandler

        file_path = Path(log_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=DEFAULT_MAX_BYTES,
            backupCount=DEFAULT_BACKUP_COUNT,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for name in ROOT_LOGGER_NAMES:
        root_logger = logging.getLogger(name)
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        for handler in handlers:
            root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the fieldvoice namespace.

    Args:
        name: Logger name (typically __name__ of the calling module)
    """
    if not name.startswith("fieldvoice"):
        name = f"fieldvoice.{name}"
    return logging.getLogger(name)


def set_component_level(component: str, level: str) -> None:
    """Set log level for one pipeline component.

    Example:
        set_component_level("Recovery", "DEBUG")
        set_component_level("PhraseCache", "WARNING")
    """
    logger = logging.getLogger(f"FIELDVOICE.{component}")
    logger.setLevel(LOG_LEVELS.get(level.upper(), logging.INFO))
