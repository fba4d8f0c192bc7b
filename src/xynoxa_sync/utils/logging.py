"""Logging setup for xynoxa-sync."""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger


def setup_logging(
    env: str,
    home_dir: Path,
    log_file: Optional[str] = None,
    log_level: str = "INFO",
) -> None:  # pragma: no cover
    """
    Configure logging for the application.

    Args:
        env: Environment name ("test" disables console output)
        home_dir: Directory the log file is written to
        log_file: Optional log file name, relative to home_dir
        log_level: Minimum level to record
    """
    # Remove default handler and any existing handlers
    logger.remove()

    if log_file:
        log_path = home_dir / log_file
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_path),
            level=log_level,
            rotation="10 MB",
            retention="10 days",
            backtrace=True,
            diagnose=False,
            enqueue=True,
            colorize=False,
        )

    # Add stderr handler outside of tests
    if env != "test":
        logger.add(sys.stderr, level=log_level, backtrace=True, diagnose=False, colorize=True)

    logger.info(f"ENV: '{env}' Log level: '{log_level}' Logging to {log_file}")
