"""Logging configuration using loguru

stdout carries the command's JSON result, so every console sink writes to
stderr. Piping `nube get products | jq` never sees a log line.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = "<level>{level: <8}</level> | <level>{message}</level>"
VERBOSE_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """
    Configure loguru for CLI use.

    Args:
        verbose: Debug level, with timestamps and module names on the console
        log_file: Optional file that always receives DEBUG records
    """
    logger.remove()

    logger.add(
        sys.stderr,
        format=VERBOSE_CONSOLE_FORMAT if verbose else CONSOLE_FORMAT,
        level="DEBUG" if verbose else "INFO",
        colorize=sys.stderr.isatty(),
    )

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level="DEBUG",
            rotation="10 MB",
            retention="14 days",
            enqueue=True,  # Thread-safe
        )
        logger.debug(f"Logging to file: {log_file}")
