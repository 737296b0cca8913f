# backend/core/logging.py

import logging
import sys
from typing import Optional

from core.config import settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Third-party loggers that drown out chat traffic at INFO
QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "redis": logging.WARNING,
    "websockets": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure process-wide logging for the chat server.

    Level comes from `level`, else LOG_LEVEL (default INFO). Output goes to
    stdout. When a handler is already installed (Uvicorn's, or pytest's
    capture) only the level is changed.
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)

    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Usage:
        from core.logging import get_logger

        logger = get_logger(__name__)
        logger.info("Room %s created", room.id)
    """
    return logging.getLogger(name)
