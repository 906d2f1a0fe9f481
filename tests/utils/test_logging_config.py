from __future__ import annotations

import io
import logging

import pytest

from src.utils.logging import ROOT_LOGGER, configure_logging


@pytest.fixture
def clean_package_logger():
    logger = logging.getLogger(ROOT_LOGGER)
    saved_level = logger.level
    saved_handlers = list(logger.handlers)
    logger.handlers = [h for h in saved_handlers if not getattr(h, "_votebox_handler", False)]
    yield logger
    logger.handlers = saved_handlers
    logger.setLevel(saved_level)


def test_configure_logging_is_idempotent_and_formats_lines(clean_package_logger):
    stream = io.StringIO()
    logger = configure_logging("debug", stream=stream)
    configure_logging("DEBUG", stream=stream)
    tagged = [h for h in logger.handlers if getattr(h, "_votebox_handler", False)]
    assert logger is clean_package_logger
    assert len(tagged) == 1
    assert logger.level == logging.DEBUG

    logging.getLogger("src.sessions.manager").info("Session %s opened", "s1")
    line = stream.getvalue().strip()
    assert line.endswith("| INFO | src.sessions.manager | Session s1 opened")
