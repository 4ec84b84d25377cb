"""Structured logging setup using loguru."""
import sys
from pathlib import Path
from typing import Callable, Optional

from loguru import logger as _logger


def setup_logging(
    log_file: Optional[str] = "leprechaun.log",
    level: str = "INFO",
    enable_console: bool = True,
    listener: Optional[Callable[[str], None]] = None,
) -> None:
    """Configure logging for the trading bot.

    Args:
        log_file: Path to log file, or None to skip file logging
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to stdout as well
        listener: Optional callable receiving each formatted line, e.g. an
            operator dashboard that mirrors the bot's activity
    """
    _logger.remove()

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(log_path),
            format=log_format,
            level=level,
            rotation="50 MB",
            retention="14 days",
        )

    if enable_console:
        _logger.add(
            sys.stdout,
            format=log_format,
            level=level,
            colorize=True,
        )

    if listener is not None:
        # short timestamped lines, the way the session status feed shows them
        _logger.add(listener, format="{time:HH:mm:ss} {message}", level=level, colorize=False)


logger = _logger
