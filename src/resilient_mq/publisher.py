"""Message publisher for single and transactional batch publishing."""
import logging
import secrets
import time
from typing import Any, Dict, Iterable, Mapping, Optional

import aio_pika
from aio_pika import DeliveryMode

from resilient_mq.connection import ConnectionManager
from resilient_mq.exceptions import PublishError
from resilient_mq.serializers import JSONSerializer, Serializer

logger = logging.getLogger(__name__)

# AMQP basic properties accepted by aio_pika.Message
MESSAGE_PROPERTIES = frozenset({
    "content_type",
    "content_encoding",
    "headers",
    "delivery_mode",
    "priority",
    "correlation_id",
    "reply_to",
    "expiration",
    "message_id",
    "timestamp",
    "type",
    "user_id",
    "app_id",
})


def generate_message_id() -> str:
    """Generate a unique message ID suitable as an idempotency token.

    Combines a nanosecond timestamp with 64 random bits.
    """
    return f"msg_{time.time_ns():x}_{secrets.token_hex(8)}"


class Publisher:
    """Publishes messages to the exchange owned by a ConnectionManager.

    Errors never escape: failures are logged and reported as ``False`` so
    that callers (or a retry policy wrapped around them) decide what to do.

    Example:
        publisher = Publisher(ConnectionManager(config))
        ok = await publisher.publish("order.created", {"order_id": 1})

        ok = await publisher.publish_batch([
            {"routing_key": "order.created", "data": {"order_id": 1}},
            {"routing_key": "order.paid", "data": {"order_id": 1}},
        ])

    Attributes:
        _connection_manager: Source of channel and exchange
        _serializer: Default body serializer
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        serializer: Optional[Serializer] = None,
    ):
        """Initialize publisher.

        Args:
            connection_manager: Connection manager providing the exchange
            serializer: Default serializer (JSON if omitted)
        """
        self._connection_manager = connection_manager
        self._serializer = serializer or JSONSerializer()

    @property
    def serializer(self) -> Serializer:
        """Default body serializer."""
        return self._serializer

    @serializer.setter
    def serializer(self, serializer: Serializer) -> None:
        self._serializer = serializer

    generate_message_id = staticmethod(generate_message_id)

    async def publish(
        self,
        routing_key: str,
        data: Any,
        properties: Optional[Mapping[str, Any]] = None,
        serializer: Optional[Serializer] = None,
    ) -> bool:
        """Publish a single message.

        Args:
            routing_key: Routing key for the exchange
            data: Payload, serialized with ``serializer`` or the default
            properties: AMQP message properties; override the defaults
                (content_type, message_id, persistent delivery mode)
            serializer: Serializer for this message only

        Returns:
            True if the broker accepted the publish, False otherwise
        """
        exchange_name = self._connection_manager.get_exchange_name()
        try:
            exchange = await self._connection_manager.get_exchange()
            message = self._build_message(data, properties, serializer)
            await exchange.publish(
                message,
                routing_key=routing_key,
                timeout=self._connection_manager.operation_timeout,
            )

            if self._connection_manager.config.debug:
                logger.debug(
                    f"Published message {message.message_id} to {exchange_name} "
                    f"with routing key {routing_key}"
                )
            return True

        except Exception as e:
            logger.error(
                f"Failed to publish message: {e}",
                extra={
                    "routing_key": routing_key,
                    "exchange": exchange_name,
                    "error": str(e),
                },
            )
            return False

    async def publish_batch(self, messages: Iterable[Mapping[str, Any]]) -> bool:
        """Publish messages atomically inside a channel transaction.

        Each message is a mapping with ``routing_key``, ``data`` and optional
        ``properties``. Either every message is committed or none is.

        Args:
            messages: Messages to publish

        Returns:
            True if the transaction committed, False otherwise
        """
        messages = list(messages)
        try:
            channel = await self._connection_manager.get_channel()
            exchange = await self._connection_manager.get_exchange()

            async with self._connection_manager.create_transaction(channel):
                for index, item in enumerate(messages):
                    routing_key = item.get("routing_key")
                    if not routing_key:
                        raise PublishError(f"Message at index {index} has no routing key")

                    message = self._build_message(item.get("data"), item.get("properties"))
                    await exchange.publish(
                        message,
                        routing_key=routing_key,
                        timeout=self._connection_manager.operation_timeout,
                    )

            if self._connection_manager.config.debug:
                logger.debug(f"Published batch of {len(messages)} messages")
            return True

        except Exception as e:
            logger.error(
                f"Failed to publish batch: {e}",
                extra={
                    "message_count": len(messages),
                    "exchange": self._connection_manager.get_exchange_name(),
                    "error": str(e),
                },
            )
            return False

    def _build_message(
        self,
        data: Any,
        properties: Optional[Mapping[str, Any]] = None,
        serializer: Optional[Serializer] = None,
    ) -> aio_pika.Message:
        serializer = serializer or self._serializer
        merged: Dict[str, Any] = {
            "content_type": serializer.content_type,
            "message_id": generate_message_id(),
            "delivery_mode": DeliveryMode.PERSISTENT,
        }

        for key, value in (properties or {}).items():
            if key == "application_headers":
                key = "headers"
            if key not in MESSAGE_PROPERTIES:
                logger.debug(f"Ignoring unknown message property '{key}'")
                continue
            merged[key] = value

        if merged.get("headers") is not None:
            merged["headers"] = dict(merged["headers"])

        return aio_pika.Message(serializer.serialize(data), **merged)

    def __repr__(self) -> str:
        return (
            f"Publisher(exchange={self._connection_manager.get_exchange_name()!r}, "
            f"serializer={self._serializer!r})"
        )
