"""
Centralized logging configuration for the Market Signal Fusion Engine.

Every module logs through `logging.getLogger(__name__)`; this module only
decides where records go:
- Console output with colored level names
- Optional rotating log file
- Optional JSON line format
- Environment-based defaults (LOG_LEVEL, LOG_FILE, LOG_JSON, LOG_CONSOLE)
"""

import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "market_fusion"


class ColoredFormatter(logging.Formatter):
    """Formatter with ANSI colors on the level name."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"
        result = super().format(record)
        # Other handlers share the record
        record.levelname = levelname
        return result


def setup_logging(
    name: Optional[str] = ROOT_LOGGER_NAME,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
    rotation: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure handlers for the engine's logger tree.

    Args:
        name: Logger name (defaults to the package logger)
        level: Log level name; falls back to LOG_LEVEL, then INFO
        log_file: Log file path; falls back to LOG_FILE, None disables it
        console: Enable stdout logging
        json_format: One JSON object per line
        rotation: Rotate the log file at `max_bytes`
        max_bytes: Maximum log file size before rotation
        backup_count: Rotated files to keep

    Returns:
        Configured logger

    Example:
        >>> logger = setup_logging(level="DEBUG", log_file="logs/fusion.log")
        >>> logger.info("Engine started")
    """
    logger = logging.getLogger(name)

    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if log_file is None:
        log_file = os.getenv("LOG_FILE")

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    if json_format:
        log_format = (
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"logger": "%(name)s", "module": "%(module)s", '
            '"function": "%(funcName)s", "line": %(lineno)d, '
            '"message": "%(message)s"}'
        )
        date_format = "%Y-%m-%dT%H:%M:%S"
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        date_format = "%Y-%m-%d %H:%M:%S"

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        if json_format:
            console_handler.setFormatter(logging.Formatter(log_format, date_format))
        else:
            console_handler.setFormatter(ColoredFormatter(log_format, date_format))
        logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        if rotation:
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        else:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(log_format, date_format))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    message: str = "An exception occurred",
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its traceback.

    Example:
        >>> try:
        ...     store.put(ns, key, blob)
        ... except PersistenceError as e:
        ...     log_exception(logger, e, "Flush failed", logging.WARNING)
    """
    logger.log(level, f"{message}: {exc}", exc_info=True)


def configure_default_logging(quiet: bool = False) -> None:
    """
    Configure package logging from the environment.

    - LOG_LEVEL: Logging level (default: INFO, WARNING when quiet)
    - LOG_FILE: Log file path (default: logs/market_fusion.log)
    - LOG_JSON: Use JSON format (default: false)
    - LOG_CONSOLE: Enable console output (default: true)
    """
    level = os.getenv("LOG_LEVEL", "WARNING" if quiet else "INFO")
    log_file = os.getenv("LOG_FILE", "logs/market_fusion.log")
    json_format = os.getenv("LOG_JSON", "false").lower() == "true"
    console = os.getenv("LOG_CONSOLE", "true").lower() == "true"

    setup_logging(
        level=level,
        log_file=log_file,
        console=console,
        json_format=json_format,
    )

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.info("=" * 60)
    logger.info("Market Signal Fusion Engine - Logging Initialized")
    logger.info(f"Log Level: {level}")
    logger.info(f"Log File: {log_file}")
    logger.info(f"JSON Format: {json_format}")
    logger.info(f"Timestamp: {datetime.now().isoformat()}")
    logger.info("=" * 60)
