"""Loguru logging setup."""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> None:
    """
    Configure loguru sinks.

    Args:
        level: Minimum level for the console sink
        log_dir: Directory for the rotating log file (console only when None)
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=CONSOLE_FORMAT, colorize=True)

    if log_dir is None:
        return

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"Cannot create log directory {log_dir}: {e}")
        return

    logger.add(
        log_dir / "collectarr.log",
        level="DEBUG",
        format=FILE_FORMAT,
        rotation="10 MB",
        retention=5,
        encoding="utf-8",
    )
