"""Logging configuration for the wapair service.

Every module logs through ``logging.getLogger(__name__)``; the handlers live
on the ``wapair`` package logger so bridge, deploy and pairing lines share
one stream and are told apart by component:

    2025-01-27 10:30:45 [INFO] pairing.pairing_manager: Pairing session created: ...
"""

import logging
from pathlib import Path

from wapair.config import Config

PACKAGE_LOGGER = "wapair"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(component)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_logger: logging.Logger | None = None


class ComponentFormatter(logging.Formatter):
    """Formatter exposing the logger name without the package prefix."""

    def format(self, record: logging.LogRecord) -> str:
        name = record.name
        if name.startswith(PACKAGE_LOGGER + "."):
            name = name[len(PACKAGE_LOGGER) + 1 :]
        record.component = name
        return super().format(record)


def setup_logging(config: Config) -> logging.Logger:
    """Set up the package logger from configuration.

    Idempotent: later calls return the logger configured first.

    Args:
        config: Configuration object with log settings.

    Returns:
        The ``wapair`` logger.
    """
    global _logger

    if _logger is not None:
        return _logger

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = ComponentFormatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.propagate = False

    _logger = logger
    return logger


def reset_logging() -> None:
    """Reset logging state. Used for testing."""
    global _logger
    if _logger is not None:
        _logger.handlers.clear()
        _logger = None
