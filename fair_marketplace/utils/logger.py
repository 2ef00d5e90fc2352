"""Logging utilities for the fair_marketplace package."""

from __future__ import annotations

import logging
import os
from typing import Optional

_LOGGER: Optional[logging.Logger] = None

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str = "fair_marketplace") -> logging.Logger:
    """Return a module-level logger configured with a simple formatter.

    The root configuration happens once; ``LOG_LEVEL`` (default ``INFO``)
    controls verbosity.
    """
    global _LOGGER
    if _LOGGER is None:
        level_name = os.getenv("LOG_LEVEL", "INFO").upper()
        logging.basicConfig(
            level=getattr(logging, level_name, logging.INFO),
            format=LOG_FORMAT,
        )
        _LOGGER = logging.getLogger("fair_marketplace")
    return logging.getLogger(name)
