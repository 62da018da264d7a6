"""Message consumer with queue registry and reconnection handling."""
import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

from resilient_mq.config import ConsumerSettings
from resilient_mq.connection import ConnectionManager
from resilient_mq.exceptions import (
    ChannelClosedError,
    ConnectionClosedError,
    ConnectionFailureError,
    SerializationError,
)
from resilient_mq.serializers import JSONSerializer

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Any, AbstractIncomingMessage], Any]
Deserializer = Callable[[AbstractIncomingMessage], Any]

# Errors that mean the channel or connection is gone and must be rebuilt
CONNECTION_ERRORS = (
    ConnectionFailureError,
    ChannelClosedError,
    aio_pika.exceptions.AMQPConnectionError,
    aio_pika.exceptions.ChannelClosed,
    aio_pika.exceptions.ChannelInvalidStateError,
    ConnectionError,
)


@dataclass
class QueueConfig:
    """Declaration recorded for a queue, replayed after reconnecting."""

    binding_keys: List[str] = field(default_factory=list)
    durable: bool = True
    auto_delete: bool = False
    arguments: Dict[str, Any] = field(default_factory=dict)
    exchange: Optional[str] = None


class Consumer:
    """RabbitMQ consumer that keeps consuming across connection loss.

    Features:
    - Queue declaration and binding with an in-memory registry
    - QoS (prefetch count)
    - Manual or automatic acknowledgement
    - Reconnection with doubling delay, replaying queue setup
    - Validated ack/reject that never raise

    ``consume()`` blocks the calling task until ``stop()`` is called, the
    channel is closed after a critical error, or reconnection is exhausted.
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        settings: Optional[ConsumerSettings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize consumer.

        Args:
            connection_manager: Connection manager providing channels
            settings: Consumer behaviour (defaults to the manager's config)
            sleep: Awaitable sleep taking seconds, used between reconnects
        """
        self._connection_manager = connection_manager
        self._settings = settings or connection_manager.config.consumer
        self._sleep = sleep
        self._serializer = JSONSerializer()
        self._configured_queues: Dict[str, QueueConfig] = {}

        self._channel: Optional[AbstractChannel] = None
        self._queue: Optional[AbstractQueue] = None
        self._queue_name: Optional[str] = None
        self._consumer_tag: Optional[str] = None
        self._auto_ack = False
        self._on_message: Optional[Callable[[AbstractIncomingMessage], Awaitable[Any]]] = None
        self._consuming = False
        self._wakeup = asyncio.Event()
        self._interrupts: Deque[BaseException] = deque()

    @property
    def settings(self) -> ConsumerSettings:
        """Consumer behaviour settings."""
        return self._settings

    @property
    def is_consuming(self) -> bool:
        """True while ``consume()`` is running its loop."""
        return self._consuming

    @property
    def configured_queues(self) -> Dict[str, QueueConfig]:
        """Copy of the queue registry."""
        return dict(self._configured_queues)

    def get_queue_config(self, queue_name: str) -> Optional[QueueConfig]:
        """Recorded declaration for a queue, if it was set up."""
        return self._configured_queues.get(queue_name)

    async def setup_queue(
        self,
        queue_name: str,
        binding_keys: Optional[Iterable[str]] = None,
        durable: bool = True,
        auto_delete: bool = False,
        arguments: Optional[Dict[str, Any]] = None,
        exchange: Optional[str] = None,
    ) -> "Consumer":
        """Declare a queue, bind it and record its configuration.

        Args:
            queue_name: Queue to declare
            binding_keys: Routing keys to bind to the exchange
            durable: Survive broker restarts
            auto_delete: Delete when the last consumer goes away
            arguments: Queue arguments (x-dead-letter-exchange, ...)
            exchange: Exchange to bind to (defaults to the managed exchange)

        Returns:
            self, for chaining

        Raises:
            Exception: Declaration or binding errors are logged and re-raised
        """
        binding_keys = list(binding_keys or [])
        arguments = dict(arguments or {})
        exchange_name = exchange if exchange is not None else self._connection_manager.get_exchange_name()

        try:
            channel = await self._connection_manager.get_channel()
            queue = await channel.declare_queue(
                queue_name,
                durable=durable,
                auto_delete=auto_delete,
                arguments=arguments or None,
                timeout=self._connection_manager.operation_timeout,
            )

            if binding_keys and not exchange_name:
                logger.warning(
                    f"Queue {queue_name} uses the default exchange, ignoring binding keys {binding_keys}"
                )
            elif exchange_name:
                for binding_key in binding_keys:
                    await queue.bind(
                        exchange_name,
                        routing_key=binding_key,
                        timeout=self._connection_manager.operation_timeout,
                    )

        except Exception as e:
            logger.error(
                f"Failed to set up queue {queue_name}: {e}",
                extra={
                    "queue": queue_name,
                    "exchange": exchange_name,
                    "binding_keys": binding_keys,
                    "durable": durable,
                    "auto_delete": auto_delete,
                    "arguments": arguments,
                    "error": str(e),
                },
            )
            raise

        self._configured_queues[queue_name] = QueueConfig(
            binding_keys=binding_keys,
            durable=durable,
            auto_delete=auto_delete,
            arguments=arguments,
            exchange=exchange,
        )

        logger.info(
            f"Queue {queue_name} set up",
            extra={"queue": queue_name, "exchange": exchange_name, "binding_keys": binding_keys},
        )
        return self

    async def consume(
        self,
        queue_name: str,
        callback: MessageCallback,
        binding_keys: Optional[Iterable[str]] = None,
        auto_ack: bool = False,
        arguments: Optional[Dict[str, Any]] = None,
        deserializer: Optional[Deserializer] = None,
    ) -> None:
        """Consume messages from a queue until stopped.

        ``callback(data, message)`` receives the deserialized body and the raw
        message. Unless ``auto_ack`` is set the message is acknowledged when the
        callback returns anything but ``False`` and rejected when it raises.

        Args:
            queue_name: Queue to consume from
            callback: Sync or async message handler
            binding_keys: Routing keys; a differing non-empty list re-runs setup
            auto_ack: Let the broker consider messages acknowledged on delivery
            arguments: Queue arguments used if the queue must be set up
            deserializer: Turns a message into callback data (JSON body by default)

        Raises:
            ConnectionClosedError: If reconnection attempts are exhausted
        """
        binding_keys = list(binding_keys or [])
        queue_config = self._configured_queues.get(queue_name)
        if queue_config is None or (binding_keys and queue_config.binding_keys != binding_keys):
            await self.setup_queue(queue_name, binding_keys, arguments=arguments)

        self._queue_name = queue_name
        self._auto_ack = auto_ack
        self._on_message = self._create_handler(queue_name, callback, auto_ack, deserializer)
        self._clear_interrupts()

        channel = await self._connection_manager.get_channel()
        await self._start_consuming(channel)
        self._consuming = True

        logger.info(
            f"Started consuming from {queue_name}",
            extra={"queue": queue_name, "auto_ack": auto_ack, "consumer_tag": self._consumer_tag},
        )

        while self._consuming:
            try:
                await self._wait()
            except CONNECTION_ERRORS as e:
                await self._handle_reconnection(e)
            except Exception as e:
                logger.error(
                    f"Error while consuming from {queue_name}: {e}",
                    extra={"queue": queue_name, "error": str(e), "error_class": type(e).__name__},
                )
                if self._settings.stop_on_critical_error:
                    await self._close_channel_gracefully()

        logger.info(f"Stopped consuming from {queue_name}")

    async def stop(self) -> None:
        """Cancel the broker consumer and make ``consume()`` return."""
        if not self._consuming:
            return

        self._consuming = False
        await self._cancel_consumer()
        self._wakeup.set()
        logger.info(f"Consumer for {self._queue_name} stopped")

    async def get_message_from_queue(self, queue_name: str) -> Optional[AbstractIncomingMessage]:
        """Fetch a single message without auto-ack.

        Returns:
            The message, or None if the queue is empty, the channel is
            unavailable or the fetch failed
        """
        try:
            channel = await self._connection_manager.get_channel()
            if channel is None or channel.is_closed:
                logger.warning(f"Cannot get message from {queue_name}: channel is not open")
                return None

            queue = await channel.get_queue(queue_name, ensure=False)
            return await queue.get(
                no_ack=False,
                fail=False,
                timeout=self._connection_manager.operation_timeout,
            )

        except Exception as e:
            logger.error(
                f"Failed to get message from {queue_name}: {e}",
                extra={"queue": queue_name, "error": str(e)},
            )
            return None

    async def acknowledge(self, message: AbstractIncomingMessage) -> None:
        """Acknowledge a message; invalid deliveries are skipped with a warning."""
        if not self._validate_delivery(message, "acknowledge"):
            return

        try:
            await message.ack()
        except Exception as e:
            logger.warning(f"Failed to acknowledge message {message.delivery_tag}: {e}")

    async def reject(self, message: AbstractIncomingMessage, requeue: bool = False) -> None:
        """Reject a message; invalid deliveries are skipped with a warning."""
        if not self._validate_delivery(message, "reject"):
            return

        try:
            await message.reject(requeue=requeue)
        except Exception as e:
            logger.warning(f"Failed to reject message {message.delivery_tag}: {e}")

    def _validate_delivery(self, message: AbstractIncomingMessage, operation: str) -> bool:
        """Check the message can still be settled on its channel.

        Reading the channel of a message raises once aio-pika has closed it;
        any error here counts as an invalid delivery.
        """
        try:
            if getattr(message, "processed", False):
                logger.warning(f"Cannot {operation} message: already settled")
                return False

            channel = message.channel
            if channel is None:
                logger.warning(f"Cannot {operation} message: no channel")
                return False
            if channel.is_closed:
                logger.warning(f"Cannot {operation} message: channel is closed")
                return False

            delivery_tag = getattr(message, "delivery_tag", None)
            if isinstance(delivery_tag, bool) or not isinstance(delivery_tag, int) or delivery_tag <= 0:
                logger.warning(f"Cannot {operation} message: invalid delivery tag {delivery_tag!r}")
                return False
        except Exception as e:
            logger.warning(f"Cannot {operation} message: {e}")
            return False
        return True

    def _create_handler(
        self,
        queue_name: str,
        callback: MessageCallback,
        auto_ack: bool,
        deserializer: Optional[Deserializer],
    ) -> Callable[[AbstractIncomingMessage], Awaitable[Any]]:
        """Wrap callback with deserialization, ack/reject and error logging."""

        async def handler(message: AbstractIncomingMessage) -> Any:
            try:
                if deserializer is not None:
                    data = deserializer(message)
                else:
                    data = self._serializer.deserialize(message.body)

                result = callback(data, message)
                if inspect.isawaitable(result):
                    result = await result

                if not auto_ack and result is not False:
                    await self.acknowledge(message)
                return result

            except Exception as e:
                if not auto_ack and getattr(message, "processed", False):
                    # The callback settled the message before raising
                    logger.debug(f"Message from {queue_name} already settled after error: {e}")
                else:
                    logger.error(
                        f"Error processing message from {queue_name}: {e}",
                        extra={
                            "queue": queue_name,
                            "delivery_tag": message.delivery_tag,
                            "body": message.body.decode("utf-8", errors="replace"),
                            "error": str(e),
                        },
                    )
                    if not auto_ack:
                        requeue = self._settings.requeue_on_error and not isinstance(e, SerializationError)
                        await self.reject(message, requeue=requeue)
                if self._settings.throw_exceptions:
                    raise
                return False

        return handler

    async def _dispatch(self, message: AbstractIncomingMessage) -> None:
        # Errors re-raised by the handler surface in the consume loop
        try:
            await self._on_message(message)
        except Exception as e:
            self._interrupt(e)

    def _on_channel_closed(self, channel: AbstractChannel, sender: Any, exc: Optional[BaseException]) -> None:
        if channel is not self._channel or not self._consuming:
            return
        self._interrupt(
            ChannelClosedError(
                "Channel closed while consuming",
                original=exc if isinstance(exc, Exception) else None,
            )
        )

    def _interrupt(self, error: BaseException) -> None:
        self._interrupts.append(error)
        self._wakeup.set()

    def _clear_interrupts(self) -> None:
        self._interrupts.clear()
        self._wakeup.clear()

    async def _wait(self) -> None:
        """Wait for an interrupt, a stop request or the wait timeout."""
        timeout = self._settings.wait_timeout or None
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            return

        if self._interrupts:
            error = self._interrupts.popleft()
            if not self._interrupts:
                self._wakeup.clear()
            raise error
        self._wakeup.clear()

    async def _start_consuming(self, channel: AbstractChannel) -> None:
        if self._settings.prefetch_count > 0:
            await channel.set_qos(
                prefetch_count=self._settings.prefetch_count,
                timeout=self._connection_manager.operation_timeout,
            )

        self._channel = channel
        channel.close_callbacks.add(partial(self._on_channel_closed, channel))
        self._queue = await channel.get_queue(self._queue_name, ensure=False)
        self._consumer_tag = await self._queue.consume(self._dispatch, no_ack=self._auto_ack)

    async def _handle_reconnection(self, error: BaseException) -> AbstractChannel:
        """Rebuild connection, queue and consumer after connection loss.

        Raises:
            ConnectionClosedError: If every attempt failed
        """
        queue_name = self._queue_name
        max_retries = self._settings.reconnect_max_retries
        delay = self._settings.reconnect_delay

        logger.warning(
            f"Connection lost while consuming from {queue_name}: {error}",
            extra={"queue": queue_name, "error": str(error), "error_class": type(error).__name__},
        )

        self._channel = None
        self._queue = None
        self._consumer_tag = None
        self._clear_interrupts()

        for attempt in range(1, max_retries + 1):
            logger.info(f"Reconnection attempt {attempt}/{max_retries} in {delay}s")
            await self._sleep(delay)
            if not self._consuming:
                return None

            try:
                if not await self._connection_manager.reconnect():
                    raise ConnectionFailureError("Broker reconnection failed")

                channel = await self._connection_manager.get_channel()
                queue_config = self._configured_queues.get(queue_name)
                if queue_config is not None:
                    await self.setup_queue(
                        queue_name,
                        queue_config.binding_keys,
                        durable=queue_config.durable,
                        auto_delete=queue_config.auto_delete,
                        arguments=queue_config.arguments,
                        exchange=queue_config.exchange,
                    )
                await self._start_consuming(channel)
                self._clear_interrupts()

                logger.info(f"Reconnected and resumed consuming from {queue_name}")
                return channel

            except Exception as e:
                logger.error(
                    f"Reconnection attempt {attempt}/{max_retries} failed: {e}",
                    extra={"queue": queue_name, "attempt": attempt, "error": str(e)},
                )
                self._channel = None
                delay *= 2

        self._consuming = False
        logger.critical(
            f"Failed to reconnect after {max_retries} attempts",
            extra={"queue": queue_name, "max_retries": max_retries},
        )
        raise ConnectionClosedError(
            f"Failed to reconnect after {max_retries} attempts",
            original=error if isinstance(error, Exception) else None,
        )

    async def _cancel_consumer(self) -> None:
        queue, tag = self._queue, self._consumer_tag
        self._consumer_tag = None
        if queue is None or tag is None or self._channel is None or self._channel.is_closed:
            return
        try:
            await queue.cancel(tag)
        except Exception as e:
            logger.warning(f"Failed to cancel consumer {tag}: {e}")

    async def _close_channel_gracefully(self) -> None:
        self._consuming = False
        await self._cancel_consumer()

        channel, self._channel = self._channel, None
        if channel is not None and not channel.is_closed:
            try:
                await channel.close()
            except Exception as e:
                logger.warning(f"Failed to close channel: {e}")
        logger.warning(f"Closed channel for {self._queue_name} after critical error")

    def __repr__(self) -> str:
        return (
            f"Consumer(queue={self._queue_name!r}, consuming={self._consuming}, "
            f"queues={list(self._configured_queues)})"
        )
