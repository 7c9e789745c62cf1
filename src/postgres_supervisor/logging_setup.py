"""Logging setup for the supervisor.

Routes library log records through rich so they interleave cleanly with
console output.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: str = "WARNING", console: Console | None = None) -> logging.Logger:
    """Configure the package logger with a single RichHandler.

    Args:
        level: Log level name (e.g. "INFO")
        console: Console to write to; defaults to stderr

    Returns:
        The configured package logger
    """
    logger = logging.getLogger("postgres_supervisor")
    logger.setLevel(level.upper())

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(name)s - %(message)s"))
        logger.addHandler(handler)

    return logger
