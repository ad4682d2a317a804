"""
Capsule - Logging configuration.

Created by orpheus497

Wires the standard library logging module to a console handler and a
rotating log file under the data directory, driven by the [logging] section
of the configuration.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import Config
from .constants import LOG_BACKUP_COUNT, LOG_DATE_FORMAT, LOG_FILENAME, LOG_FORMAT, LOG_MAX_BYTES, LOGS_DIR


def setup_logging(config: Config, debug: bool = False) -> Optional[Path]:
    """
    Configure the "capsule" logger hierarchy.

    Args:
        config: Loaded configuration
        debug: Force DEBUG level regardless of configuration

    Returns:
        Path of the log file, or None if file logging is disabled
    """
    level_name = "DEBUG" if debug else str(config.get("logging", "level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger("capsule")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if config.get("logging", "console_logging", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        # Keep the interactive console readable
        console.setLevel(level if debug else max(level, logging.WARNING))
        logger.addHandler(console)

    log_path = None
    if config.get("logging", "file_logging", True):
        log_dir = config.data_dir / LOGS_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / LOG_FILENAME
        file_handler = RotatingFileHandler(
            log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return log_path
