"""Logging configuration and utilities."""

import logging
import sys
from pathlib import Path
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from typing import Optional


def setup_logger(
    name: str = "chatpay",
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    log_filename: Optional[str] = None
) -> logging.Logger:
    """
    Configure and return the package logger with daily rotation support.

    Module loggers created with ``logging.getLogger(__name__)`` inside the
    ``chatpay`` package propagate to this logger.

    Args:
        name: Logger name
        level: Logging level
        log_dir: Log directory path (relative to project root, optional)
        log_filename: Base log filename without extension (optional, defaults to date format YYYY-MM-DD)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Clear existing handlers to allow reconfiguration
    if logger.handlers:
        logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_dir:
        # Project root is two levels above chatpay/core/
        root_dir = Path(__file__).parent.parent.parent
        log_path = root_dir / log_dir
        log_path.mkdir(parents=True, exist_ok=True)

        if log_filename:
            log_file = log_path / f"{log_filename}.log"
        else:
            log_file = log_path / f"{datetime.now().strftime('%Y-%m-%d')}.log"

        # Rotate at midnight, keep 30 days
        file_handler = TimedRotatingFileHandler(
            filename=str(log_file),
            when='midnight',
            interval=1,
            backupCount=30,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        file_handler.suffix = "%Y-%m-%d"

        logger.addHandler(file_handler)

        logger.info(f"Logging to file: {log_file.absolute()}")

    # Telegram/httpx loggers are chatty at INFO (every poll is logged)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logger


def level_from_name(level_name: str) -> int:
    """Map a level name such as ``"DEBUG"`` to its numeric value, INFO if unknown."""
    return getattr(logging, str(level_name).upper(), logging.INFO)
