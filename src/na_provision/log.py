"""Logging setup for the command-line tool."""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "na_provision"


def setup_logging(level: str = "INFO", console: Optional[Console] = None) -> logging.Logger:
    """Route package logs through a rich handler.

    Args:
        level: Log level name
        console: Console to render on, stderr by default

    Returns:
        The package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers = [
        RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
    ]
    return logger
