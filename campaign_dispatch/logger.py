"""Logging helpers for the campaign dispatch engine."""

import logging
import os

ROOT_LOGGER = "campaign_dispatch"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure the root handler once, from ``level`` or ``CD_LOG_LEVEL``.

    Only entry points (main.py, the CLI) call this; library code just asks
    for a logger.
    """
    name = (level or os.getenv("CD_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the package logger, or one of its children (``campaign_dispatch.<name>``)."""
    if not name:
        return logging.getLogger(ROOT_LOGGER)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
