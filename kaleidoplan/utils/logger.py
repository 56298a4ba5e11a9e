#!/usr/bin/env python3
"""
🔍 Centralized Logging System for Kaleidoplan Player
Console logging with colors in development, JSON lines for production,
plus rotating log files under ~/.kaleidoplan/logs
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

IS_DEV_MODE = '--dev' in sys.argv or os.getenv('KALEIDOPLAN_DEV') == '1'
ENABLE_JSON_LOGS = os.getenv('KALEIDOPLAN_JSON_LOGS', '0') == '1'

LOG_LEVEL = logging.DEBUG if IS_DEV_MODE else logging.INFO
ENABLE_FILE_LOGGING = os.getenv('KALEIDOPLAN_FILE_LOGS', '1') != '0'
MAX_LOG_SIZE = 5 * 1024 * 1024
BACKUP_COUNT = 3


def _get_app_log_dir() -> Path:
    """Get application log directory path-agnostically"""
    env_log_dir = os.getenv('KALEIDOPLAN_LOG_DIR')
    if env_log_dir:
        return Path(env_log_dir)
    app_name = os.getenv("KALEIDOPLAN_APP_NAME", "kaleidoplan")
    return Path.home() / f".{app_name}" / "logs"


LOG_DIR = _get_app_log_dir()

_env_level = os.getenv('KALEIDOPLAN_LOG_LEVEL')
if _env_level:
    LOG_LEVEL = getattr(logging, _env_level.upper(), LOG_LEVEL)

_STANDARD_RECORD_FIELDS = frozenset((
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
    'taskName', 'no_color',
))


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record: logging.LogRecord) -> str:
        if getattr(record, 'no_color', False):
            return super().format(record)

        color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        reset = self.COLORS['RESET']
        original = record.levelname
        record.levelname = f"{color}{original}{reset}"
        try:
            message = super().format(record)
        finally:
            record.levelname = original

        context = _extract_context(record)
        if context:
            message += " | " + " ".join(f"{k}={v}" for k, v in context.items())
        return message


class JSONFormatter(logging.Formatter):
    """Structured JSON formatter.

    Example output:
        {"timestamp": "2026-05-04T10:30:00.123Z", "level": "WARNING",
         "logger": "kaleidoplan.resolver", "message": "resolver.fallback.preview",
         "track_id": "4uLU6hMCjMI75M1A2tKUQC"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if record.levelno >= logging.WARNING:
            log_data['source'] = f"{record.filename}:{record.lineno}"
            log_data['function'] = record.funcName

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for key, value in _extract_context(record).items():
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data, ensure_ascii=True, sort_keys=True)


def _extract_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Return the fields passed via ``extra={...}``."""
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _STANDARD_RECORD_FIELDS and not key.startswith('_')
    }


def _file_formatter() -> logging.Formatter:
    if ENABLE_JSON_LOGS:
        return JSONFormatter()
    return logging.Formatter(
        '%(asctime)s | %(name)s | %(levelname)s | %(filename)s:%(lineno)d | %(message)s'
    )


def setup_logger(name: str = "kaleidoplan") -> logging.Logger:
    """
    Sets up a logger with console and (optionally) rotating file handlers.

    Child loggers such as ``kaleidoplan.token`` propagate to the configured
    ``kaleidoplan`` logger, so calling this once for the root package name is
    enough for the whole library.

    Args:
        name: Logger name

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    logger.setLevel(LOG_LEVEL)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(LOG_LEVEL)
    if ENABLE_JSON_LOGS:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ColoredFormatter('%(asctime)s | %(levelname)s | %(name)s | %(message)s'))
    logger.addHandler(console_handler)

    if not ENABLE_FILE_LOGGING:
        return logger

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
    except OSError:
        return logger

    try:
        file_handler = logging.handlers.RotatingFileHandler(
            LOG_DIR / "kaleidoplan.log",
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
            encoding='utf-8'
        )
        file_handler.setLevel(LOG_LEVEL)
        file_handler.setFormatter(_file_formatter())
        logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            LOG_DIR / "kaleidoplan_errors.log",
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
            encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(_file_formatter())
        logger.addHandler(error_handler)
    except OSError as exc:
        logger.warning("File logging disabled: %s", exc)

    return logger


def log_structured(logger: logging.Logger, level: int, message: str, **context: Any) -> None:
    """Log a message with structured context fields.

    In JSON mode the context fields appear as separate keys; otherwise they
    are appended to the message as ``key=value`` pairs.

    Example:
        >>> log_structured(logger, logging.INFO, "queue.advance",
        ...                index=3, reason="ADVANCE")
    """
    if ENABLE_JSON_LOGS:
        logger.log(level, message, extra=context)
    elif context:
        context_str = " ".join(f"{k}={v}" for k, v in context.items())
        logger.log(level, f"{message} | {context_str}")
    else:
        logger.log(level, message)
