"""Logging setup for long-running use (the transcript monitor).

Library code only ever calls ``logging.getLogger(__name__)``; handlers are
installed here and nowhere else.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "agent_logs"


def configure_logging(level: str = "INFO", console: Console | None = None) -> logging.Logger:
    """Attach a Rich handler to the package logger. Safe to call twice."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper())

    for handler in logger.handlers:
        if isinstance(handler, RichHandler):
            handler.setLevel(level.upper())
            return logger

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setLevel(level.upper())
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
