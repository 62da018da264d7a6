"""Unit tests for topic routing key matching."""
import pytest

from resilient_mq.routing import routing_key_matches


@pytest.mark.parametrize(
    "pattern,routing_key,expected",
    [
        ("order.created", "order.created", True),
        ("order.created", "order.paid", False),
        ("order.*", "order.created", True),
        ("order.*", "order.created.eu", False),
        ("order.#", "order", True),
        ("order.#", "order.created.eu", True),
        ("#", "anything.at.all", True),
        ("*.created", "user.created", True),
        ("*.created", "created", False),
        ("#.eu", "order.created.eu", True),
        ("order.#.eu", "order.eu", True),
        ("order.#.eu", "order.us", False),
    ],
)
def test_routing_key_matches(pattern, routing_key, expected):
    """Should follow AMQP topic semantics."""
    assert routing_key_matches(pattern, routing_key) is expected
