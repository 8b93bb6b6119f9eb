import logging

import pytest


@pytest.fixture(autouse=True)
def _restore_logger_state():
    # Alembic's env.py calls logging.config.fileConfig(), which disables every
    # logger that already exists; keep that from leaking into later tests.
    manager = logging.Logger.manager
    disabled = {
        name: logger.disabled
        for name, logger in manager.loggerDict.items()
        if isinstance(logger, logging.Logger)
    }
    yield
    for name, logger in manager.loggerDict.items():
        if isinstance(logger, logging.Logger):
            logger.disabled = disabled.get(name, False)
