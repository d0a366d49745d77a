from __future__ import annotations

import logging
import sys

from loguru import logger

from turnstream.core.settings import get_settings


def configure_logging(*, production: bool) -> str:
    """Configure log levels for both stdlib `logging` and Loguru.

    Defaults to INFO in production, DEBUG otherwise. Override via
    `TURNSTREAM_LOG_LEVEL`.
    """

    level_name = (get_settings().log_level or ("INFO" if production else "DEBUG")).upper()
    level_value = logging.getLevelName(level_name)
    if not isinstance(level_value, int):
        level_name, level_value = "INFO", logging.INFO

    # Host applications may still log through the standard library
    logging.getLogger().setLevel(level_value)

    logger.remove()
    logger.add(
        sys.stdout,
        level=level_name,
        backtrace=False,
        diagnose=False,
    )

    return level_name
