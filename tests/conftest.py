import pytest
import structlog

from agentic_loop.config import Config, set_config


@pytest.fixture(autouse=True)
def _quiet_logging():
    structlog.configure(
        processors=[structlog.processors.KeyValueRenderer()],
        logger_factory=structlog.ReturnLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    yield


@pytest.fixture(autouse=True)
def _default_config():
    set_config(Config())
    yield
    set_config(None)
