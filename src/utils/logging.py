"""Console logging for the service.

Library modules only call ``logging.getLogger(__name__)``; the entry point
calls ``configure_logging`` once with the configured level.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
ROOT_LOGGER = "src"


def configure_logging(level: str = "INFO", stream: object | None = None) -> logging.Logger:
    """Attach a single stream handler to the package logger and set its level."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper())
    if not any(getattr(h, "_votebox_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(stream or sys.stderr)  # type: ignore[arg-type]
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._votebox_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
