"""Logging setup shared by every module."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Any

from bookswap.config.env import ENABLE_LOGGING, LOG_DIR, LOG_FILE, LOG_LEVEL

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUP_COUNT = 5


class CustomLogger(logging.Logger):
    """Logger with a helper for logging errors together with their traceback."""

    def error_trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        """Log an error message and the active exception's stack trace."""
        kwargs.setdefault("exc_info", True)
        self.error(msg, *args, **kwargs)


def _build_file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=_MAX_LOG_BYTES,
            backupCount=_LOG_BACKUP_COUNT,
        )
    except OSError:
        return None
    handler.setFormatter(formatter)
    return handler


def setup_logger(name: str) -> CustomLogger:
    """Return the named logger, attaching console and file handlers once."""
    previous_class = logging.getLoggerClass()
    logging.setLoggerClass(CustomLogger)
    try:
        logger = logging.getLogger(name)
    finally:
        logging.setLoggerClass(previous_class)

    if not isinstance(logger, CustomLogger):
        # Created earlier by a third party with the stock class.
        logger.__class__ = CustomLogger

    if logger.handlers:
        return logger  # type: ignore[return-value]

    logger.setLevel(LOG_LEVEL)
    logger.propagate = False
    formatter = logging.Formatter(_LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if ENABLE_LOGGING:
        file_handler = _build_file_handler(formatter)
        if file_handler is not None:
            logger.addHandler(file_handler)

    return logger  # type: ignore[return-value]
