"""
Logging Setup

Logs go to stdout with one shared format; container platforms treat stderr
as errors.
"""

import logging
import sys
from typing import Optional

from compass_analytics.config.settings import get_settings


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging from LOG_LEVEL (or an explicit level)."""
    level_name = (level or get_settings().LOG_LEVEL).upper()

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,  # Explicitly use stdout
        force=True,  # Override any existing config
    )

    # Quiet down chatty loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
