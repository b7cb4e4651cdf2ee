"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for all rental operations.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module if hasattr(record, 'module') else record.name,
            "logger": record.name,
            "message": record.getMessage(),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
            "extra": getattr(record, 'extra', None)
        }

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        # Add exception info if present
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


TEXT_FORMAT = '%(asctime)s %(name)-24s %(levelname)-8s %(message)s'


def setup_logging(
    level: str = "INFO",
    logger_name: str = "bike_rental",
    log_format: str = "json",
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the logger
        log_format: "json" for structured lines, "text" for human-readable ones
        log_file: Write to this file instead of stderr

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file, encoding="utf-8") if log_file else logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))

    # Prevent propagation to avoid duplicate logs
    logger.propagate = False

    return logger


def get_logger(name: str = "bike_rental") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, resource: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        action: Action being performed
        resource: Resource being acted upon
        extra: Additional structured data
    """
    level_no = getattr(logging, level.upper())
    if not logger.isEnabledFor(level_no):
        return

    record = logger.makeRecord(
        logger.name, level_no, __name__, 0, message, (), None
    )

    # Add custom fields
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if extra:
        record.extra = extra

    logger.handle(record)
