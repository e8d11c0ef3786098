"""Centralized loguru configuration."""

import os
import sys

from loguru import logger

LOG_FORMAT = ' | '.join(
    (
        '<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green>',
        '<level>{level:<8}</level>',
        '<cyan>{name}:{function}:{line}</cyan>',
        '{message}',
    )
)

_configured = False


def setup_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Replace loguru's default handler. Safe to call more than once."""
    global _configured
    if _configured:
        return
    level = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    log_file = log_file or os.getenv('LOG_FILE')

    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)
    if log_file:
        logger.add(
            log_file,
            format=LOG_FORMAT,
            level=level,
            rotation='1 day',
            retention='14 days',
            enqueue=True,
        )
    _configured = True
