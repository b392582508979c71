"""
Logging module for the after-sales core.

Provides centralized console logging, an optional rotating log file, and an
optional separate audit stream for loggers whose name mentions "audit".
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOGGER_NAME = "aftersales_core"
LOG_FORMAT = "[%(asctime)s] %(levelname)s:%(name)s: %(message)s"

# Global logger instance
logger: Optional[logging.Logger] = None


def _audit_only(record: logging.LogRecord) -> bool:
    return record.levelno >= logging.INFO and "audit" in record.name.lower()


def setup_logger(
    level: int = logging.INFO,
    log_file: str | Path | None = None,
    audit_log_file: str | Path | None = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Set up the logger with console and optional file handlers.

    Args:
        level: Logging level (default: INFO)
        log_file: Optional path for a rotating log file
        audit_log_file: Optional path that receives only audit records
        max_bytes: Rotation size for file handlers
        backup_count: Number of rotated files to keep

    Returns:
        Configured logger instance
    """
    global logger

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(
            str(log_file), maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if audit_log_file:
        audit_handler = RotatingFileHandler(
            str(audit_log_file), maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        audit_handler.setLevel(logging.INFO)
        audit_handler.setFormatter(formatter)
        audit_handler.addFilter(_audit_only)
        logger.addHandler(audit_handler)

    # Prevent propagation to root logger to avoid duplicates
    logger.propagate = False

    return logger


def get_logger() -> logging.Logger:
    """
    Get the global logger instance.

    Returns:
        Logger instance or creates a basic one if not initialized
    """
    global logger
    if logger is None:
        logger = logging.getLogger(LOGGER_NAME)
        logger.setLevel(logging.INFO)

        if not logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
            logger.propagate = False

    return logger


def get_audit_logger() -> logging.Logger:
    """Child logger routed to the audit stream when one is configured."""
    return get_logger().getChild("audit")
