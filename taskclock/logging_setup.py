"""Process-wide logging configuration."""

import logging

from taskclock.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install the root handler. Safe to call more than once."""
    logging.basicConfig(
        format=LOG_FORMAT,
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
    )
