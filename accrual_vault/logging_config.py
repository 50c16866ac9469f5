"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for all ledger, rate and vault
operations.
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
            "logger": record.name,
            "message": record.getMessage(),
            "caller": getattr(record, 'caller', None),
            "account": getattr(record, 'account', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
            "extra": getattr(record, 'extra', None)
        }

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "accrual_vault",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root application logger
        log_format: "json" for structured output, "text" for plain lines
        log_file: Optional file path; logs go to stderr when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        ))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "accrual_vault") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               caller: Optional[str] = None, account: Optional[str] = None,
               action: Optional[str] = None, resource: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        caller: Identity that invoked the operation
        account: Account affected by the operation
        action: Action being performed
        resource: Resource being acted upon
        extra: Additional structured data (amounts, rates, timestamps)
    """
    numeric_level = getattr(logging, level.upper())
    if not logger.isEnabledFor(numeric_level):
        return

    record = logger.makeRecord(
        logger.name, numeric_level, __name__, 0, message, (), None
    )

    if caller:
        record.caller = caller
    if account:
        record.account = account
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if extra:
        record.extra = extra

    logger.handle(record)
