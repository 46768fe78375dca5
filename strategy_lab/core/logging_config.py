"""
Logging configuration.

Features:
- Colored console output for interactive runs
- Optional rotating log file
- JSON (serialized) records for log shippers
- run_id context bound per backtest / validation run
"""

import sys
from typing import Optional

from loguru import logger

from strategy_lab.settings import SETTINGS

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>run={extra[run_id]}</cyan> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | run={extra[run_id]} | {name}:{line} - {message}"


def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    json_format: Optional[bool] = None,
) -> None:
    """
    Setup engine logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (optional)
        json_format: Serialize records as JSON (True for production)
    """
    level = (log_level or SETTINGS.logging.level).upper()
    log_file = log_file if log_file is not None else SETTINGS.logging.file
    serialize = SETTINGS.logging.serialize if json_format is None else json_format

    # Remove default handler
    logger.remove()
    logger.configure(extra={"run_id": "-"})

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=level,
        colorize=not serialize,
        serialize=serialize,
    )

    if log_file:
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level=level,
            rotation="1 day",
            retention="7 days",
            encoding="utf-8",
            serialize=serialize,
        )

    logger.debug(f"Logging configured: level={level}, file={log_file}, json={serialize}")


__all__ = ["setup_logging"]
