"""Unit tests for the messaging facade."""
import asyncio
import json
import logging

import msgspec
import pytest

from resilient_mq.circuit_breaker import CircuitBreaker
from resilient_mq.config import MessagingConfig
from resilient_mq.connection import ConnectionManager
from resilient_mq.consumer import Consumer
from resilient_mq.exceptions import CircuitOpenError, MessageValidationError, QueueError
from resilient_mq.publisher import Publisher
from resilient_mq.retry import RetryPolicy
from resilient_mq.serializers import SerializationFormat
from resilient_mq.service import MessagingService, MessagingServiceFactory
from resilient_mq.utils.logging.context import get_context, get_correlation_id, log_context
from resilient_mq.validation import MessageValidator


def _build_service(broker, config, sleep, circuit_breaker=None):
    manager = ConnectionManager(config, connect=broker.connect)
    return MessagingService(
        connection_manager=manager,
        publisher=Publisher(manager),
        consumer=Consumer(manager, sleep=sleep),
        validator=MessageValidator(),
        config=config,
        retry_policy=RetryPolicy.from_settings(config.resilience, sleep=sleep),
        circuit_breaker=circuit_breaker,
    )


@pytest.fixture
def service(broker, config, sleep):
    return _build_service(broker, config, sleep)


async def _consume_one(service, queue_name, handler, binding_keys=None):
    """Consume until the handler has run once."""
    results = []

    async def wrapper(data, message):
        try:
            return await handler(data, message)
        finally:
            results.append(message)
            await service.stop_consuming()

    await asyncio.wait_for(service.consume(queue_name, wrapper, binding_keys), timeout=5)
    return results[0]


# ==================== Publishing ====================

async def test_publish_adds_format_header_and_records_success(broker, service):
    """Should publish with the serialization_format header."""
    assert await service.publish("order.created", {"order_id": 1}) is True

    message = broker.published[0].message
    assert json.loads(message.body) == {"order_id": 1}
    assert message.headers["serialization_format"] == "json"
    assert service.telemetry.get_counter("publish.success") == 1


async def test_publish_format_override(broker, service):
    """Should encode one message with the requested format."""
    await service.publish(
        "order.created",
        {"order_id": 1},
        {"serialization_format": "msgpack", "headers": {"tenant": "eu"}},
    )

    message = broker.published[0].message
    assert msgspec.msgpack.decode(message.body) == {"order_id": 1}
    assert message.content_type == "application/x-msgpack"
    assert message.headers == {"tenant": "eu", "serialization_format": "msgpack"}


async def test_publish_default_format_from_config(broker, sleep):
    """Should use the configured default format."""
    config = MessagingConfig(exchange={"name": "test_events"}, serialization={"format": "msgpack"})
    service = _build_service(broker, config, sleep)

    await service.publish("order.created", {"order_id": 1})

    assert service.serialization_format == SerializationFormat.MSGPACK
    assert msgspec.msgpack.decode(broker.published[0].message.body) == {"order_id": 1}


async def test_publish_schema_validation_failure(broker, service):
    """Should not publish invalid payloads."""
    service._validator.register_schema("order.created", {"order_id": int})

    assert await service.publish("order.created", {"order_id": "x"}, {"schema": "order.created"}) is False
    assert broker.published == []
    assert service.telemetry.get_counter("publish.failure") == 1


async def test_validate_message_raises_with_errors(service):
    """Should raise MessageValidationError carrying field errors."""
    service._validator.register_schema("order.created", {"order_id": int})

    with pytest.raises(MessageValidationError) as exc_info:
        service.validate_message({}, "order.created")

    assert "order_id" in exc_info.value.errors


async def test_publish_retries_transient_failures(broker, service, sleep):
    """Should retry until the publisher succeeds."""
    broker.fail_publish = 2

    assert await service.publish("order.created", {"order_id": 1}) is True

    assert len(broker.published) == 1
    assert len(sleep.calls) == 2
    assert service.circuit_breaker.failure_count == 0


async def test_publish_returns_false_after_retries_exhausted(broker, service, sleep):
    """Should report failure once every attempt failed."""
    broker.fail_publish = 3

    assert await service.publish("order.created", {"order_id": 1}) is False

    assert broker.published == []
    assert service.circuit_breaker.failure_count == 1


async def test_publish_circuit_opens_and_raises(broker, config, sleep):
    """Should fail fast with CircuitOpenError once the circuit is open."""
    breaker = CircuitBreaker("rabbitmq-publisher", failure_threshold=2, reset_timeout=60)
    service = _build_service(broker, config, sleep, circuit_breaker=breaker)
    broker.fail_publish = 100

    assert await service.publish("order.created", {}) is False
    assert await service.publish("order.created", {}) is False
    attempts_before = broker.fail_publish

    with pytest.raises(CircuitOpenError):
        await service.publish("order.created", {})

    assert broker.fail_publish == attempts_before
    assert service.telemetry.get_counter("publish.failure") == 3


async def test_publish_event_envelope(broker, service):
    """Should wrap the payload and carry the context correlation ID."""
    with log_context(correlation_id="corr-1"):
        assert await service.publish_event("user.registered", {"user_id": 5}) is True

    published = broker.published[0]
    body = json.loads(published.message.body)
    assert published.routing_key == "user.registered"
    assert body["event"] == "user.registered"
    assert body["payload"] == {"user_id": 5}
    assert isinstance(body["timestamp"], float)
    assert published.message.correlation_id == "corr-1"
    assert published.message.headers["event_type"] == "user.registered"
    assert published.message.headers["content_type"] == "application/json"


async def test_publish_event_never_raises(broker, config, sleep):
    """Should return False even when the circuit is open."""
    breaker = CircuitBreaker("rabbitmq-publisher", failure_threshold=1, reset_timeout=60)
    service = _build_service(broker, config, sleep, circuit_breaker=breaker)
    broker.fail_publish = 100
    await service.publish("x", {})

    assert await service.publish_event("user.registered", {}) is False


async def test_publish_batch_chunks_and_counts_failures(broker, sleep):
    """Should publish valid messages and report partial failure."""
    config = MessagingConfig(exchange={"name": "test_events"}, publisher={"batch_size": 2})
    service = _build_service(broker, config, sleep)

    result = await service.publish_batch([
        {"routing_key": "a", "data": 1},
        {"routing_key": "b", "data": 2},
        {"data": 3},
        {"routing_key": "c", "data": 4},
        "not-a-message",
    ])

    assert result is False
    assert [p.routing_key for p in broker.published] == ["a", "b", "c"]
    assert service.telemetry.get_counter("publish_batch.success") == 1


async def test_publish_batch_all_successful(broker, service):
    """Should return True when every message is published."""
    assert await service.publish_batch([
        {"routing_key": "a", "data": 1, "properties": {"priority": 1}},
        {"routing_key": "b", "data": 2},
    ]) is True
    assert len(broker.published) == 2


# ==================== Queues ====================

async def test_setup_dead_letter_queue(broker, service):
    """Should wire the source queue to a dead-letter exchange and queue."""
    await service.setup_queue("orders", ["order.*"])

    await service.setup_dead_letter_queue("orders", "orders.dlq")

    assert "orders.dlq.exchange" in broker.exchanges
    assert broker.bindings_of("orders.dlq") == [("orders.dlq.exchange", "orders")]
    assert broker.queues["orders"].arguments == {
        "x-dead-letter-exchange": "orders.dlq.exchange",
        "x-dead-letter-routing-key": "orders",
    }
    assert service.consumer.get_queue_config("orders").binding_keys == ["order.*"]


async def test_dead_lettered_message_reaches_dlq(broker, service):
    """Should move rejected messages to the dead-letter queue."""
    await service.setup_queue("orders", ["order.*"])
    await service.setup_dead_letter_queue("orders", "orders.dlq", ["failed.order"])
    await service.publish("order.created", {"order_id": 1})

    async def handler(data, message):
        raise RuntimeError("cannot handle")

    message = await _consume_one(service, "orders", handler)

    assert message.rejected and not message.requeued
    [dead] = broker.messages_in("orders.dlq")
    assert dead.routing_key == "failed.order"
    assert json.loads(dead.body) == {"order_id": 1}


async def test_setup_predefined_queue(broker, sleep):
    """Should declare queues defined in configuration."""
    config = MessagingConfig(
        exchange={"name": "test_events"},
        queues={"orders": {"name": "orders.q", "binding_keys": ["order.#"], "arguments": {"x-max-priority": 5}}},
    )
    service = _build_service(broker, config, sleep)

    await service.setup_predefined_queue("orders")

    assert broker.bindings_of("orders.q") == [("test_events", "order.#")]
    assert broker.queues["orders.q"].arguments == {"x-max-priority": 5}


async def test_predefined_queue_missing_key(service):
    """Should raise QueueError for unknown keys."""
    with pytest.raises(QueueError, match="Queue configuration not found for key: nope"):
        await service.setup_predefined_queue("nope")
    with pytest.raises(QueueError):
        await service.consume_from_predefined_queue("nope", lambda d, m: None)


async def test_consume_from_predefined_queue(broker, sleep):
    """Should set up and consume a configured queue."""
    config = MessagingConfig(
        exchange={"name": "test_events"},
        queues={"orders": {"name": "orders.q", "binding_keys": ["order.*"]}},
    )
    service = _build_service(broker, config, sleep)
    await service.setup_predefined_queue("orders")
    await service.publish("order.created", {"order_id": 4})
    received = []

    async def handler(data, message):
        received.append(data)
        await service.stop_consuming()

    await asyncio.wait_for(service.consume_from_predefined_queue("orders", handler), timeout=5)

    assert received == [{"order_id": 4}]


# ==================== Consuming ====================

async def test_consume_decodes_by_header_and_acks(broker, service):
    """Should decode msgpack messages using the format header."""
    await service.setup_queue("orders", ["order.*"])
    await service.publish("order.created", {"order_id": 2}, {"serialization_format": "msgpack"})
    received = []

    async def handler(data, message):
        received.append(data)

    message = await _consume_one(service, "orders", handler)

    assert received == [{"order_id": 2}]
    assert message.acked
    assert service.telemetry.get_counter("consume.success") == 1


async def test_consume_failure_with_throw_exceptions_is_rejected_once(broker, sleep, caplog):
    """Should reject a failed message once when the facade re-raises."""
    config = MessagingConfig(exchange={"name": "test_events"}, consumer={"throw_exceptions": True})
    service = _build_service(broker, config, sleep)
    await service.setup_queue("orders", ["order.*"])
    await service.publish("order.created", {"order_id": 8})

    async def handler(data, message):
        raise RuntimeError("boom")

    with caplog.at_level(logging.DEBUG, logger="resilient_mq"):
        message = await _consume_one(service, "orders", handler)
        await broker.drain()

    assert message.rejected and not message.requeued
    assert "Cannot reject message" not in caplog.text
    assert "Error processing message" not in caplog.text


async def test_consume_unknown_format_falls_back_to_json(broker, service):
    """Should decode as JSON when the header names an unknown format."""
    await service.setup_queue("orders", ["order.*"])
    await service.publish("order.created", {"order_id": 3}, {"headers": {"serialization_format": "json"}})
    broker.queues["orders"].messages[0].headers["serialization_format"] = b"xml"
    received = []

    async def handler(data, message):
        received.append(data)

    await _consume_one(service, "orders", handler)

    assert received == [{"order_id": 3}]


async def test_consume_sets_log_context(broker, service):
    """Should expose correlation and message IDs to the callback's logs."""
    await service.setup_queue("orders", ["order.*"])
    await service.publish("order.created", {}, {"correlation_id": "corr-9", "message_id": "m-1"})
    seen = {}

    async def handler(data, message):
        seen["correlation_id"] = get_correlation_id()
        seen["message_id"] = get_context().get("message_id")

    await _consume_one(service, "orders", handler)

    assert seen == {"correlation_id": "corr-9", "message_id": "m-1"}
    assert get_correlation_id() is None


async def test_consume_validation_error_is_not_requeued(broker, sleep):
    """Should drop invalid messages even when requeue_on_error is set."""
    config = MessagingConfig(exchange={"name": "test_events"}, consumer={"requeue_on_error": True})
    service = _build_service(broker, config, sleep)
    await service.setup_queue("orders", ["order.*"])
    await service.publish("order.created", {"order_id": "bad"})

    async def handler(data, message):
        raise MessageValidationError("invalid order", errors={"order_id": ["not an int"]})

    message = await _consume_one(service, "orders", handler)

    assert message.rejected and not message.requeued
    assert broker.messages_in("orders") == []
    assert service.telemetry.get_counter("consume.failure") == 1


async def test_consume_other_errors_follow_requeue_setting(broker, sleep):
    """Should requeue ordinary failures when requeue_on_error is set."""
    config = MessagingConfig(exchange={"name": "test_events"}, consumer={"requeue_on_error": True})
    service = _build_service(broker, config, sleep)
    await service.setup_queue("orders", ["order.*"])
    await service.publish("order.created", {"order_id": 1})

    async def handler(data, message):
        raise RuntimeError("database unavailable")

    message = await _consume_one(service, "orders", handler)

    assert message.rejected and message.requeued
    assert len(broker.messages_in("orders")) == 1


async def test_consume_undecodable_body_is_rejected(broker, service):
    """Should reject bodies that do not match their format header."""
    await service.setup_queue("orders", ["order.*"])
    await service.publish("order.created", {"order_id": 1})
    broker.queues["orders"].messages[0].body = b"\xc1\xc1"
    calls = []

    async def handler(data, message):
        calls.append(data)

    message = await _consume_one(service, "orders", handler)

    assert calls == []
    assert message.rejected and not message.requeued


async def test_get_message_acknowledge_and_reject(broker, service):
    """Should fetch messages for manual settlement."""
    await service.setup_queue("orders", ["order.*"])
    await service.publish("order.created", {"order_id": 1})
    await service.publish("order.created", {"order_id": 2})

    first = await service.get_message_from_queue("orders")
    second = await service.get_message_from_queue("orders")
    await service.acknowledge(first)
    await service.reject(second, requeue=True)

    assert first.acked
    assert second.requeued
    assert len(broker.messages_in("orders")) == 1


# ==================== Lifecycle ====================

async def test_health_check_reports_state(broker, service):
    """Should report connectivity and circuit state."""
    status = await service.health_check()

    assert status == {
        "healthy": True,
        "connected": True,
        "circuit_state": "closed",
        "consuming": False,
    }


async def test_health_check_unreachable_broker(broker, service):
    """Should report unhealthy with the error."""
    broker.fail_connect = 1

    status = await service.health_check()

    assert status["healthy"] is False
    assert status["connected"] is False
    assert "error" in status


async def test_close_connection(broker, service):
    """Should close the broker connection."""
    await service.publish("order.created", {})

    await service.close_connection()

    assert broker.connections[0].is_closed
    assert not service.connection_manager.is_connected


def test_set_serialization_format_rejects_unknown(service):
    """Should refuse unsupported formats."""
    with pytest.raises(ValueError):
        service.set_serialization_format("xml")

    assert service.set_serialization_format("msgpack").serialization_format == SerializationFormat.MSGPACK


async def test_factory_wires_components(broker):
    """Should build a working service from one config."""
    config = MessagingConfig(exchange={"name": "factory_events"}, serialization={"format": "msgpack"})

    service = MessagingServiceFactory.create(config, connect=broker.connect)
    await service.publish("order.created", {"order_id": 1})

    assert service.publisher.serializer.format == SerializationFormat.MSGPACK
    assert service.consumer.settings is config.consumer
    assert service.circuit_breaker.name == "rabbitmq-publisher"
    assert broker.published[0].exchange == "factory_events"


async def test_factory_builds_breaker_from_resilience_settings(broker):
    """Should size the publisher circuit from resilience.failure_threshold/reset_timeout."""
    config = MessagingConfig(resilience={"failure_threshold": 2, "reset_timeout": 7})

    service = MessagingServiceFactory.create(config, connect=broker.connect)

    assert service.circuit_breaker.failure_threshold == 2
    assert service.circuit_breaker.reset_timeout == 7.0
