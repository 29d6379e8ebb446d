"""
Logging configuration
Single stderr sink for scripts and services embedding the pipeline
"""

import sys
from typing import Optional
from loguru import logger

from config.settings import settings


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(level: Optional[str] = None) -> None:
    """Replace loguru's default sink with the project format"""
    logger.remove()
    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=(level or settings.LOG_LEVEL).upper(),
    )
