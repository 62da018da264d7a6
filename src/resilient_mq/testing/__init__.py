"""Testing utilities: an in-memory broker standing in for RabbitMQ."""
from resilient_mq.testing.mocks import (
    FakeBroker,
    FakeChannel,
    FakeConnection,
    FakeExchange,
    FakeIncomingMessage,
    FakeQueue,
    FakeTransaction,
    PublishedMessage,
    RecordingSleep,
    async_raises,
)

__all__ = [
    "FakeBroker",
    "FakeChannel",
    "FakeConnection",
    "FakeExchange",
    "FakeIncomingMessage",
    "FakeQueue",
    "FakeTransaction",
    "PublishedMessage",
    "RecordingSleep",
    "async_raises",
]
