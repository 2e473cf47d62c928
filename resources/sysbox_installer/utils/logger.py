"""
Logging setup for dstack-sysbox-installer.

Console output goes to stderr so that --json summaries on stdout stay
machine-readable. An optional log file receives the same records with
timestamps.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

from ..config.settings import LogLevel

LOGGER_NAME = "sysbox_installer"

CONSOLE_FORMAT = "%(levelname)-7s %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


def setup_logging(level: Union[LogLevel, str] = LogLevel.INFO,
                  log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Log level for console and file handlers
        log_file: Optional path of a log file to append to

    Returns:
        The configured package logger
    """
    if isinstance(level, LogLevel):
        level = level.value

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if log_file else level)

    # Re-running setup (tests, repeated CLI invocations) must not stack handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    console.setLevel(level)
    logger.addHandler(console)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get the package logger or one of its children."""
    if not name or name == LOGGER_NAME:
        return logging.getLogger(LOGGER_NAME)
    if name.startswith(LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
