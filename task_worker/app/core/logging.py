"""Process-wide loguru sink setup."""
from __future__ import annotations

import sys

from loguru import logger


def configure_logging(level: str = "INFO", *, serialize: bool = False) -> None:
    """Replace the default sink with a single stderr sink.

    With serialize=True every record (including values attached via bind()) is written
    as one JSON line, which is how the structured `_log` events become queryable.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), serialize=serialize, backtrace=False)
