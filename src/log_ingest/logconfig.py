from __future__ import annotations

import sys

from loguru import logger


def configure_logging(level: str = "INFO", *, serialize: bool = False) -> None:
    """Replace loguru's default handler with a single stderr handler."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        serialize=serialize,
        backtrace=False,
        diagnose=False,
    )
