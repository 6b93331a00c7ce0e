"""
Logging Utilities

Sets up loggers with the project's formatting. Background workers log from
pool threads, so the file format records the thread name alongside the logger.
"""

import logging
import sys
from pathlib import Path
from typing import Optional


CONSOLE_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
FILE_FORMAT = '%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
PACKAGE_LOGGER = 'session_handler'


def setup_logger(name: str,
                 level: int = logging.INFO,
                 log_file: Optional[str] = None) -> logging.Logger:
    """
    Set up a logger with consistent formatting.

    Args:
        name: Logger name (usually __name__)
        level: Logging level (default: logging.INFO)
        log_file: Optional log file path. If provided, logs will be written to this file

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding multiple handlers
    if logger.handlers:
        return logger

    logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)

    return logger


def configure_root_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Apply a configured level to every package logger.

    Module loggers carry their own console handlers and levels, so the level
    is pushed down to each of them. A log file, when given, is attached once
    to the package logger and receives every module's records by propagation.

    Args:
        level: Level name from the logging config section
        log_file: Optional log file path

    Returns:
        The package logger
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    package = logging.getLogger(PACKAGE_LOGGER)
    package.setLevel(numeric)

    if log_file and not any(isinstance(h, logging.FileHandler) for h in package.handlers):
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        package.addHandler(file_handler)

    for name, logger in list(logging.root.manager.loggerDict.items()):
        if name.startswith(PACKAGE_LOGGER + ".") and isinstance(logger, logging.Logger):
            logger.setLevel(numeric)
            for handler in logger.handlers:
                handler.setLevel(numeric)
    return package
