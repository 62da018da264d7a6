"""Messaging facade composing publisher, consumer and resilience policies."""
import inspect
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from aio_pika.abc import AbstractIncomingMessage

from resilient_mq.circuit_breaker import CircuitBreaker
from resilient_mq.config import MessagingConfig
from resilient_mq.connection import ConnectionManager
from resilient_mq.consumer import Consumer, MessageCallback
from resilient_mq.exceptions import (
    CircuitOpenError,
    MessageValidationError,
    PublishError,
    QueueError,
    SerializationError,
)
from resilient_mq.publisher import Publisher
from resilient_mq.retry import RetryPolicy
from resilient_mq.serializers import SerializationFormat, Serializer, create_serializer
from resilient_mq.telemetry import Operation, Telemetry
from resilient_mq.utils.logging.context import get_correlation_id, log_context
from resilient_mq.validation import MessageValidator

logger = logging.getLogger(__name__)

PUBLISHER_CIRCUIT_NAME = "rabbitmq-publisher"

# Publish options consumed here rather than passed on as message properties
_SERVICE_OPTIONS = ("schema", "serialization_format")


def _message_body(message: AbstractIncomingMessage) -> bytes:
    return message.body


class MessagingService:
    """Resilient messaging facade.

    Publishing runs through ``CircuitBreaker -> RetryPolicy -> Publisher`` so
    transient broker failures are retried and sustained outages fail fast.
    Consuming wraps callbacks with telemetry, message-ID tracking,
    per-message format detection and error-to-reject translation.

    Example:
        service = MessagingServiceFactory.create(MessagingConfig())
        await service.publish("order.created", {"order_id": 1})

        async def handle(data, message):
            ...

        await service.consume("orders", handle, binding_keys=["order.*"])

    Attributes:
        _connection_manager: Connection and exchange owner
        _publisher: Low-level publisher
        _consumer: Low-level consumer
        _retry_policy: Retry around each publish
        _circuit_breaker: Breaker around the retried publish
        _telemetry: Operation timing and counters
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        publisher: Publisher,
        consumer: Consumer,
        validator: Optional[MessageValidator] = None,
        config: Optional[MessagingConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        telemetry: Optional[Telemetry] = None,
    ):
        """Initialize messaging service.

        Args:
            connection_manager: Connection manager shared by publisher and consumer
            publisher: Publisher to send through
            consumer: Consumer to receive with
            validator: Schema validator for the ``schema`` publish option
            config: Messaging configuration (defaults to the manager's)
            retry_policy: Retry policy (built from ``config.resilience`` if omitted)
            circuit_breaker: Circuit breaker (built from ``config.resilience`` if omitted)
            telemetry: Telemetry collector
        """
        self._connection_manager = connection_manager
        self._publisher = publisher
        self._consumer = consumer
        self._validator = validator
        self._config = config or connection_manager.config
        self._retry_policy = retry_policy or RetryPolicy.from_settings(self._config.resilience)
        self._circuit_breaker = circuit_breaker or CircuitBreaker.from_settings(
            PUBLISHER_CIRCUIT_NAME, self._config.resilience
        )
        self._telemetry = telemetry or Telemetry()
        self._serialization_format = SerializationFormat.JSON
        self._serializer: Serializer = create_serializer(SerializationFormat.JSON)
        self.set_serialization_format(self._config.serialization.format)

    @property
    def connection_manager(self) -> ConnectionManager:
        return self._connection_manager

    @property
    def publisher(self) -> Publisher:
        return self._publisher

    @property
    def consumer(self) -> Consumer:
        return self._consumer

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def telemetry(self) -> Telemetry:
        return self._telemetry

    @property
    def serialization_format(self) -> SerializationFormat:
        return self._serialization_format

    def set_serialization_format(
        self, serialization_format: Union[str, SerializationFormat]
    ) -> "MessagingService":
        """Select the default body format for published messages.

        Raises:
            ValueError: If the format is not supported
        """
        self._serializer = create_serializer(serialization_format)
        self._serialization_format = self._serializer.format
        return self

    def validate_message(self, data: Any, schema_name: str) -> bool:
        """Validate data against a registered schema.

        Returns:
            True (always True when no validator is configured)

        Raises:
            MessageValidationError: With field errors if data is invalid
            SchemaNotFoundError: If the schema is not registered
        """
        if self._validator is None:
            return True

        if not self._validator.validate(data, schema_name):
            raise MessageValidationError(
                f"Message failed validation against schema '{schema_name}'",
                errors=self._validator.get_errors(),
            )
        return True

    # Publishing

    async def publish(
        self,
        routing_key: str,
        data: Any,
        options: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Publish through circuit breaker and retry policy.

        Args:
            routing_key: Routing key
            data: Payload
            options: Message properties plus ``schema`` (validate first) and
                ``serialization_format`` (override the default format)

        Returns:
            True if published, False on any failure

        Raises:
            CircuitOpenError: If the publisher circuit is open
        """
        options = dict(options or {})
        operation = self._telemetry.start_operation("publish")

        try:
            schema = options.get("schema")
            if schema:
                self.validate_message(data, schema)

            serializer = self._serializer
            if options.get("serialization_format"):
                serializer = create_serializer(options["serialization_format"])

            properties = {k: v for k, v in options.items() if k not in _SERVICE_OPTIONS}
            properties["headers"] = {
                **(properties.get("headers") or {}),
                "serialization_format": serializer.format.value,
            }

            async def attempt() -> bool:
                published = await self._publisher.publish(
                    routing_key, data, properties, serializer=serializer
                )
                if not published:
                    raise PublishError(f"Failed to publish message to {routing_key}")
                return True

            await self._circuit_breaker.execute(lambda: self._retry_policy.execute(attempt))

        except CircuitOpenError as e:
            self._handle_publish_exception(
                operation, e, routing_key, circuit_state=self._circuit_breaker.state.value
            )
            raise
        except Exception as e:
            self._handle_publish_exception(operation, e, routing_key)
            return False

        self._telemetry.record_success(operation, routing_key=routing_key)
        return True

    def _handle_publish_exception(
        self,
        operation: Operation,
        error: Exception,
        routing_key: str,
        **context: Any,
    ) -> None:
        # Telemetry logs the failure at error level with the metrics attached
        self._telemetry.record_failure(operation, error, routing_key=routing_key, **context)

    async def publish_event(
        self,
        event_name: str,
        payload: Any,
        options: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Publish a domain event envelope using the event name as routing key.

        The body is ``{"event", "timestamp", "payload"}``; the current log
        context's correlation ID is attached when none is given.

        Returns:
            True if published, False on any failure (never raises)
        """
        try:
            event_data = {
                "event": event_name,
                "timestamp": time.time(),
                "payload": payload,
            }
            options = dict(options or {})
            if not options.get("correlation_id"):
                correlation_id = get_correlation_id()
                if correlation_id:
                    options["correlation_id"] = correlation_id

            serialization_format = SerializationFormat(
                options.get("serialization_format") or self._serialization_format
            )
            options["headers"] = {
                **(options.get("headers") or {}),
                "event_type": event_name,
                "content_type": f"application/{serialization_format.value}",
                "serialization_format": serialization_format.value,
            }

            return await self.publish(event_name, event_data, options)

        except Exception as e:
            logger.error(
                f"Failed to publish event: {e}",
                extra={"event": event_name, "error": str(e)},
            )
            return False

    async def publish_batch(self, messages: Iterable[Mapping[str, Any]]) -> bool:
        """Publish many messages, each through the full resilience stack.

        Messages are mappings with ``routing_key``, ``data`` and optional
        ``properties``, processed in chunks of ``publisher.batch_size``.

        Returns:
            True only if every message was published
        """
        messages = list(messages)
        batch_size = self._config.publisher.batch_size
        operation = self._telemetry.start_operation("publish_batch")

        try:
            stats = await self._process_batch_messages(messages, batch_size)
        except Exception as e:
            self._telemetry.record_failure(operation, e, total_messages=len(messages))
            return False

        self._telemetry.record_success(
            operation,
            total_messages=stats["total"],
            processed_messages=stats["processed"],
            failed_messages=stats["failed"],
        )
        return stats["all_successful"]

    async def _process_batch_messages(
        self, messages: List[Mapping[str, Any]], batch_size: int
    ) -> Dict[str, Any]:
        stats = {
            "total": len(messages),
            "processed": 0,
            "failed": 0,
            "all_successful": True,
        }

        for batch_index, start in enumerate(range(0, len(messages), batch_size)):
            for message in messages[start:start + batch_size]:
                if not self._is_valid_batch_message(message):
                    logger.error(
                        "Invalid message format for batch publishing",
                        extra={"batch_message": message},
                    )
                    stats["all_successful"] = False
                    stats["failed"] += 1
                    continue

                published = await self.publish(
                    message["routing_key"],
                    message["data"],
                    message.get("properties"),
                )
                if not published:
                    stats["all_successful"] = False
                    stats["failed"] += 1
                stats["processed"] += 1

            if stats["total"] > batch_size:
                logger.info(
                    "Batch publishing progress",
                    extra={
                        "batch": batch_index + 1,
                        "processed": stats["processed"],
                        "total": stats["total"],
                        "failed": stats["failed"],
                    },
                )

        return stats

    @staticmethod
    def _is_valid_batch_message(message: Any) -> bool:
        return (
            isinstance(message, Mapping)
            and bool(message.get("routing_key"))
            and "data" in message
        )

    # Queues

    async def setup_queue(
        self,
        queue_name: str,
        binding_keys: Optional[Iterable[str]] = None,
        durable: bool = True,
        auto_delete: bool = False,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> "MessagingService":
        """Declare and bind a queue (errors propagate)."""
        await self._consumer.setup_queue(queue_name, binding_keys, durable, auto_delete, arguments)
        return self

    async def setup_dead_letter_queue(
        self,
        source_queue: str,
        dead_letter_queue: str,
        binding_keys: Optional[Iterable[str]] = None,
    ) -> "MessagingService":
        """Route rejected messages of ``source_queue`` into ``dead_letter_queue``.

        Declares the ``<dead_letter_queue>.exchange`` topic exchange, binds the
        dead-letter queue to it and (re)declares the source queue with
        ``x-dead-letter-exchange`` and ``x-dead-letter-routing-key``. The source
        queue keeps the binding keys it was set up with.
        """
        binding_keys = list(binding_keys or [])
        dead_letter_exchange = f"{dead_letter_queue}.exchange"
        dead_letter_routing_key = binding_keys[0] if binding_keys else source_queue

        await self._connection_manager.declare_exchange(dead_letter_exchange, "topic")

        await self._consumer.setup_queue(
            dead_letter_queue,
            binding_keys or [dead_letter_routing_key],
            exchange=dead_letter_exchange,
        )

        source_config = self._consumer.get_queue_config(source_queue)
        await self._consumer.setup_queue(
            source_queue,
            source_config.binding_keys if source_config else [],
            durable=True,
            auto_delete=False,
            arguments={
                **(source_config.arguments if source_config else {}),
                "x-dead-letter-exchange": dead_letter_exchange,
                "x-dead-letter-routing-key": dead_letter_routing_key,
            },
        )

        logger.info(
            f"Dead-letter queue {dead_letter_queue} set up for {source_queue}",
            extra={"exchange": dead_letter_exchange, "routing_key": dead_letter_routing_key},
        )
        return self

    async def setup_predefined_queue(self, queue_key: str) -> "MessagingService":
        """Declare a queue from ``config.queues``.

        Raises:
            QueueError: If no queue is configured under the key
        """
        definition = self._get_queue_definition(queue_key)
        await self._consumer.setup_queue(
            definition.name,
            definition.binding_keys,
            durable=definition.durable,
            auto_delete=definition.auto_delete,
            arguments=definition.arguments,
        )
        return self

    async def consume_from_predefined_queue(
        self,
        queue_key: str,
        callback: MessageCallback,
        auto_ack: Optional[bool] = None,
    ) -> None:
        """Set up a configured queue and consume from it.

        Raises:
            QueueError: If no queue is configured under the key
        """
        definition = self._get_queue_definition(queue_key)
        await self.setup_predefined_queue(queue_key)
        await self.consume(
            definition.name,
            callback,
            definition.binding_keys,
            auto_ack=auto_ack,
            arguments=definition.arguments,
        )

    def _get_queue_definition(self, queue_key: str):
        definition = self._config.queues.get(queue_key)
        if definition is None:
            raise QueueError(f"Queue configuration not found for key: {queue_key}")
        return definition

    # Consuming

    async def consume(
        self,
        queue_name: str,
        callback: MessageCallback,
        binding_keys: Optional[Iterable[str]] = None,
        auto_ack: Optional[bool] = None,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Consume a queue with telemetry and error translation around callback.

        ``callback(data, message)`` gets the body decoded with the format named
        in the message's ``serialization_format`` header (JSON otherwise).
        Invalid or undecodable messages are rejected without requeue; other
        errors are rejected with ``consumer.requeue_on_error``.

        Raises:
            ConnectionClosedError: If reconnection attempts are exhausted
        """
        if auto_ack is None:
            auto_ack = self._config.consumer.auto_ack

        await self._consumer.consume(
            queue_name,
            self._create_consumer_callback(callback, auto_ack, queue_name),
            binding_keys,
            auto_ack=auto_ack,
            arguments=arguments,
            deserializer=_message_body,
        )

    def _create_consumer_callback(
        self,
        callback: MessageCallback,
        auto_ack: bool,
        queue_name: str,
    ) -> Callable:
        async def wrapped(body: bytes, message: AbstractIncomingMessage) -> Any:
            message_id = self._get_message_id(message)
            operation = self._telemetry.start_operation("consume")

            async with log_context(correlation_id=message.correlation_id, message_id=message_id):
                try:
                    data = self._deserialize_message_data(body, message)
                    result = callback(data, message)
                    if inspect.isawaitable(result):
                        result = await result

                    self._telemetry.record_success(operation, queue=queue_name, message_id=message_id)
                    return result

                except Exception as e:
                    return await self._handle_consumer_exception(
                        e, message, auto_ack, queue_name, message_id, operation
                    )

        return wrapped

    async def _handle_consumer_exception(
        self,
        error: Exception,
        message: AbstractIncomingMessage,
        auto_ack: bool,
        queue_name: str,
        message_id: str,
        operation: Operation,
    ) -> bool:
        self._telemetry.record_failure(operation, error, queue=queue_name, message_id=message_id)

        if not auto_ack:
            if isinstance(error, (MessageValidationError, SerializationError)):
                requeue = False
            else:
                requeue = self._config.consumer.requeue_on_error
            await self._consumer.reject(message, requeue=requeue)

        if self._config.consumer.throw_exceptions:
            raise error
        return False

    def _get_message_id(self, message: AbstractIncomingMessage) -> str:
        message_id = getattr(message, "message_id", None)
        if message_id:
            return message_id
        return self._publisher.generate_message_id()

    def _deserialize_message_data(self, body: bytes, message: AbstractIncomingMessage) -> Any:
        headers = message.headers or {}
        serialization_format = headers.get("serialization_format")
        if isinstance(serialization_format, bytes):
            serialization_format = serialization_format.decode("utf-8")

        try:
            serializer = create_serializer(serialization_format or SerializationFormat.JSON)
        except ValueError:
            logger.warning(
                f"Unknown serialization format {serialization_format!r}, falling back to JSON"
            )
            serializer = create_serializer(SerializationFormat.JSON)

        return serializer.deserialize(body)

    async def get_message_from_queue(self, queue_name: str) -> Optional[AbstractIncomingMessage]:
        """Fetch a single message (None if empty or unavailable)."""
        return await self._consumer.get_message_from_queue(queue_name)

    async def acknowledge(self, message: AbstractIncomingMessage) -> None:
        """Acknowledge a message (invalid deliveries are skipped)."""
        await self._consumer.acknowledge(message)

    async def reject(self, message: AbstractIncomingMessage, requeue: bool = False) -> None:
        """Reject a message (invalid deliveries are skipped)."""
        await self._consumer.reject(message, requeue=requeue)

    async def stop_consuming(self) -> None:
        """Stop a running ``consume()``."""
        await self._consumer.stop()

    # Lifecycle

    async def close_connection(self) -> None:
        """Close the broker connection."""
        await self._consumer.stop()
        await self._connection_manager.close_connection()

    async def health_check(self) -> Dict[str, Any]:
        """Report broker reachability and resilience state.

        Returns:
            Dict with healthy, connected, circuit_state and consuming
        """
        healthy = True
        error = None
        try:
            channel = await self._connection_manager.get_channel()
            healthy = not channel.is_closed
        except Exception as e:
            healthy = False
            error = str(e)
            logger.warning(f"Messaging health check failed: {e}")

        status = {
            "healthy": healthy and not self._circuit_breaker.is_open,
            "connected": self._connection_manager.is_connected,
            "circuit_state": self._circuit_breaker.state.value,
            "consuming": self._consumer.is_consuming,
        }
        if error:
            status["error"] = error
        return status

    def __repr__(self) -> str:
        return (
            f"MessagingService(exchange={self._connection_manager.get_exchange_name()!r}, "
            f"format={self._serialization_format.value}, circuit={self._circuit_breaker!r})"
        )


class MessagingServiceFactory:
    """Factory wiring a MessagingService from one configuration."""

    @staticmethod
    def create(
        config: Optional[MessagingConfig] = None,
        connect: Optional[Callable[..., Any]] = None,
        validator: Optional[MessageValidator] = None,
        telemetry: Optional[Telemetry] = None,
    ) -> MessagingService:
        """Create a fully wired service.

        Args:
            config: Messaging configuration (loaded from environment if omitted)
            connect: Connection factory (``aio_pika.connect`` by default)
            validator: Schema validator
            telemetry: Telemetry collector

        Returns:
            MessagingService sharing one ConnectionManager between publisher
            and consumer
        """
        config = config or MessagingConfig()
        manager_kwargs = {"connect": connect} if connect is not None else {}
        connection_manager = ConnectionManager(config, **manager_kwargs)

        serializer = create_serializer(config.serialization.format)
        return MessagingService(
            connection_manager=connection_manager,
            publisher=Publisher(connection_manager, serializer=serializer),
            consumer=Consumer(connection_manager, settings=config.consumer),
            validator=validator or MessageValidator(),
            config=config,
            telemetry=telemetry,
        )
