"""Root pytest configuration."""
import os

import pytest

from resilient_mq.config import MessagingConfig
from resilient_mq.connection import ConnectionManager
from resilient_mq.testing import FakeBroker, RecordingSleep


def pytest_configure(config):
    """Configure pytest to handle integration test markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (requires RabbitMQ)"
    )


def pytest_runtest_setup(item):
    """Skip integration tests if not enabled."""
    if item.get_closest_marker("integration"):
        if not os.getenv("RUN_INTEGRATION_TESTS"):
            pytest.skip(
                "Integration tests skipped. Set RUN_INTEGRATION_TESTS=1 to run."
            )


@pytest.fixture
def broker():
    """In-memory broker."""
    return FakeBroker()


@pytest.fixture
def config():
    """Messaging config using a dedicated test exchange."""
    return MessagingConfig(
        exchange={"name": "test_events"},
        consumer={"reconnect_delay": 1.0, "reconnect_max_retries": 3},
    )


@pytest.fixture
def manager(broker, config):
    """Connection manager wired to the in-memory broker."""
    return ConnectionManager(config, connect=broker.connect)


@pytest.fixture
def sleep():
    """Sleep replacement recording requested delays."""
    return RecordingSleep()
