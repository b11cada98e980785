"""
Enigmo - Logging setup for the relay process.

Modules log through ``logging.getLogger(__name__)``; this module only wires
handlers onto the ``enigmo`` logger once at process start.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.logging import RichHandler

from .config import Config
from .constants import DEFAULT_DATA_DIR, LOG_BACKUP_COUNT, LOG_DATE_FORMAT, LOG_FILENAME, LOG_FORMAT, LOG_MAX_BYTES

ROOT_LOGGER = "enigmo"


def setup_logging(config: Config, debug: bool = False) -> logging.Logger:
    """
    Configure handlers for the ``enigmo`` logger hierarchy.

    Console output goes through rich; file output (when enabled) uses a
    rotating plain-text handler. Calling this twice replaces the handlers
    installed by the previous call.

    Args:
        config: Loaded configuration (``[logging]`` section)
        debug: Force DEBUG level regardless of configuration

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    level_name = "DEBUG" if debug else str(config.get("logging", "level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if config.get("logging", "console_logging", True):
        console = RichHandler(rich_tracebacks=True, show_path=debug)
        console.setFormatter(logging.Formatter("%(name)s - %(message)s", datefmt=LOG_DATE_FORMAT))
        logger.addHandler(console)

    if config.get("logging", "file_logging", False):
        # Defaults to ~/.enigmo/relay.log
        path = Path(config.get("logging", "file") or Path(DEFAULT_DATA_DIR) / LOG_FILENAME).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
