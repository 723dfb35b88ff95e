"""Process-wide loguru sink setup for the API."""
from __future__ import annotations

import sys

from loguru import logger


def configure_logging(level: str = "INFO", *, serialize: bool = False) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), serialize=serialize, backtrace=False)
