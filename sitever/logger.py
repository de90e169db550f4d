"""Logging setup for sitever.

Every message is a JSON document (``json.dumps``) carrying at least an
``"event"`` key, so log files can be fed straight into structured tooling.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

LOGGER_NAME = "sitever"
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(log_file: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    """Return the package logger, (re)configuring its handlers.

    Args:
        log_file: Optional path of a file to append structured JSON logs to.
        level: Log level name; defaults to ``SITEVER_LOG_LEVEL`` or ``INFO``.
    """
    logger = logging.getLogger(LOGGER_NAME)
    level_name = (level or os.environ.get("SITEVER_LOG_LEVEL", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(_FORMAT)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(formatter)
    stream.setLevel(logging.WARNING)
    logger.addHandler(stream)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def get_logger() -> logging.Logger:
    """Return the package logger, configuring a default one on first use."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        return setup_logging()
    return logger
