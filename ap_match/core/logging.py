"""
Loguru-based logging for the match core and its workers.

Modules log through the standard ``logging`` module; ``setup_logging`` routes
every record into loguru sinks.
"""

import logging
import sys
from pathlib import Path
from typing import Dict

from loguru import logger

from ap_match.core.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}"

# Third-party loggers and the level they are held at outside DEBUG
LIBRARY_LEVELS: Dict[str, int] = {
    "celery": logging.INFO,
    "kombu": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "asyncio": logging.WARNING,
}


class InterceptHandler(logging.Handler):
    """Forward standard logging records to loguru, keeping the caller's location."""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(log_to_file: bool = True, log_file: str = "ap_match.log"):
    """
    Configure loguru sinks and intercept standard logging.

    Args:
        log_to_file: Also write a rotating file under ``LOG_DIR``
        log_file: File name inside ``LOG_DIR``
    """
    logger.remove()
    logger.add(sys.stdout, format=CONSOLE_FORMAT, level=settings.LOG_LEVEL, colorize=True)

    if log_to_file:
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_dir / log_file),
            format=FILE_FORMAT,
            level=settings.LOG_LEVEL,
            rotation="10 MB",
            retention="30 days",
            compression="zip",
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for name, level in LIBRARY_LEVELS.items():
        library_logger = logging.getLogger(name)
        library_logger.handlers = [InterceptHandler()]
        library_logger.propagate = False
        library_logger.setLevel(logging.DEBUG if settings.DEBUG else level)
