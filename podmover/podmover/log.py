"""Logging setup shared by the podmover CLI and library."""

import logging
import sys
from typing import Optional


LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

ROOT_LOGGER = "podmover"


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Configure the ``podmover`` logger hierarchy.

    Args:
        level: Log level name (DEBUG, INFO, ...). Defaults to INFO.

    Returns:
        The configured root podmover logger.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logger.setLevel(log_level)

    # Avoid adding handlers multiple times
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        logger.addHandler(handler)

    for handler in logger.handlers:
        handler.setLevel(log_level)

    return logger
