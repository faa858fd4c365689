"""Shared pytest fixtures."""

import logging

import pytest

from welfare_chat.sync.daemon import reset_shutdown


@pytest.fixture(autouse=True)
def reset_logging_and_shutdown():
    """Detach handlers added by setup_logging and clear the shutdown flag."""
    yield
    package_logger = logging.getLogger("welfare_chat")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)
    reset_shutdown()
