"""RabbitMQ connection and channel management."""
import logging
import ssl
from typing import Any, Callable, Dict, Optional, Union

import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange

from resilient_mq.config import MessagingConfig

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Owns one broker connection and one channel, created lazily.

    The connection and channel are cached and transparently re-created when
    found closed. The configured exchange is declared once per channel; a
    fresh channel (or a new exchange name) triggers a new declaration.

    Example:
        manager = ConnectionManager(config)
        channel = await manager.get_channel()
        exchange = await manager.get_exchange()
    """

    def __init__(
        self,
        config: Optional[MessagingConfig] = None,
        exchange_name: Optional[str] = None,
        exchange_type: Optional[Union[str, ExchangeType]] = None,
        connect: Callable[..., Any] = aio_pika.connect,
    ):
        """Initialize connection manager.

        Args:
            config: Messaging configuration (defaults loaded from environment)
            exchange_name: Overrides ``config.exchange.name``
            exchange_type: Overrides ``config.exchange.type``
            connect: Connection factory with the ``aio_pika.connect`` signature
        """
        self._config = config or MessagingConfig()
        self._exchange_name = (
            exchange_name if exchange_name is not None else self._config.exchange.name
        )
        self._exchange_type = ExchangeType(exchange_type or self._config.exchange.type)
        self._connect = connect
        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None
        self._exchange_declared = False

    @property
    def config(self) -> MessagingConfig:
        """Messaging configuration in use."""
        return self._config

    @property
    def is_connected(self) -> bool:
        """Check if connection is active."""
        return self._connection is not None and not self._connection.is_closed

    @property
    def operation_timeout(self) -> float:
        """Timeout in seconds applied to broker RPCs."""
        return self._config.connection.read_write_timeout

    async def get_connection(self) -> AbstractConnection:
        """Get the cached connection, opening a new one if absent or closed.

        Raises:
            Exception: Whatever the connection factory raises
        """
        if self._connection is None or self._connection.is_closed:
            self._connection = await self._create_connection()
        return self._connection

    async def get_channel(self) -> AbstractChannel:
        """Get the cached channel with the exchange declared on it.

        Opens a channel (and a connection if needed) when none is open. On
        any failure the connection is torn down before re-raising.

        Raises:
            Exception: The original connection, channel or declaration error
        """
        try:
            if self._channel is None or self._channel.is_closed:
                connection = await self.get_connection()
                self._channel = await connection.channel(
                    publisher_confirms=self._config.publisher.confirm_select,
                )
                self._exchange = None
                self._exchange_declared = False
                if self._config.debug:
                    logger.debug("Created new RabbitMQ channel")

            if not self._exchange_declared:
                await self._declare_exchange()

            return self._channel

        except Exception as e:
            logger.error(
                f"Failed to get RabbitMQ channel: {e}",
                extra={"error": str(e), "error_class": type(e).__name__},
            )
            await self.close_connection()
            raise

    async def get_exchange(self) -> AbstractExchange:
        """Get the declared exchange object for the current channel."""
        await self.get_channel()
        return self._exchange

    def get_exchange_name(self) -> str:
        """Name of the exchange messages are published to."""
        return self._exchange_name

    def set_exchange_name(self, exchange_name: str) -> "ConnectionManager":
        """Switch exchange; it is declared on the next ``get_channel()``."""
        self._exchange_name = exchange_name
        self._exchange = None
        self._exchange_declared = False
        return self

    def get_exchange_type(self) -> ExchangeType:
        """Type of the managed exchange."""
        return self._exchange_type

    async def declare_exchange(
        self,
        name: str,
        exchange_type: Union[str, ExchangeType] = ExchangeType.TOPIC,
        durable: bool = True,
        auto_delete: bool = False,
    ) -> AbstractExchange:
        """Declare an additional exchange on the current channel.

        Used for auxiliary exchanges such as dead-letter exchanges; does not
        change the managed exchange.
        """
        channel = await self.get_channel()
        exchange = await channel.declare_exchange(
            name,
            type=ExchangeType(exchange_type),
            durable=durable,
            auto_delete=auto_delete,
            timeout=self.operation_timeout,
        )
        logger.debug(f"Declared exchange '{name}' of type '{ExchangeType(exchange_type).value}'")
        return exchange

    async def close_connection(self) -> None:
        """Close channel and connection, logging rather than raising failures.

        Both references are always cleared.
        """
        if self._channel is not None and not self._channel.is_closed:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning(f"Failed to close RabbitMQ channel: {e}")

        if self._connection is not None and not self._connection.is_closed:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning(f"Failed to close RabbitMQ connection: {e}")

        self._channel = None
        self._connection = None
        self._exchange = None
        self._exchange_declared = False

    async def reconnect(self) -> bool:
        """Drop the current connection and establish a fresh one.

        Returns:
            True if a new connection, channel and exchange are ready,
            False otherwise (partial state is cleaned up)
        """
        await self.close_connection()

        try:
            self._connection = await self._create_connection()
            self._channel = await self._connection.channel(
                publisher_confirms=self._config.publisher.confirm_select,
            )
            self._exchange_declared = False
            await self._declare_exchange()

            if self._config.debug:
                logger.debug("Successfully reconnected to RabbitMQ")
            return True

        except Exception as e:
            logger.error(
                f"Failed to reconnect to RabbitMQ: {e}",
                extra={"error": str(e), "error_class": type(e).__name__},
            )
            await self.close_connection()
            return False

    def create_transaction(self, channel: AbstractChannel) -> "ChannelTransaction":
        """Create a transaction context manager for atomic publishing on channel."""
        return ChannelTransaction(channel)

    async def get_queue_info(self, queue_name: str) -> Optional[Dict[str, int]]:
        """Get message and consumer counts of a queue.

        A passive declare runs on a throwaway channel so that a missing queue
        does not close the managed channel.

        Args:
            queue_name: Name of queue

        Returns:
            Dict with message_count and consumer_count, None if queue doesn't exist
        """
        connection = await self.get_connection()
        channel = await connection.channel(publisher_confirms=False)
        try:
            queue = await channel.declare_queue(
                queue_name,
                passive=True,
                timeout=self.operation_timeout,
            )
            result = queue.declaration_result
            return {
                "message_count": result.message_count,
                "consumer_count": result.consumer_count,
            }
        except aio_pika.exceptions.ChannelNotFoundEntity:
            logger.debug(f"Queue {queue_name} does not exist")
            return None
        finally:
            if not channel.is_closed:
                await channel.close()

    async def purge_queue(self, queue_name: str) -> int:
        """Purge all messages from a queue.

        Args:
            queue_name: Name of queue

        Returns:
            Number of messages purged
        """
        channel = await self.get_channel()
        queue = await channel.get_queue(queue_name, ensure=False)
        result = await queue.purge(timeout=self.operation_timeout)
        logger.info(f"Purged {result.message_count} messages from {queue_name}")
        return result.message_count

    async def _create_connection(self) -> AbstractConnection:
        settings = self._config.connection
        kwargs: Dict[str, Any] = {
            "host": settings.host,
            "port": settings.port,
            "login": settings.user,
            "password": settings.password,
            "virtualhost": settings.vhost,
            "timeout": settings.connection_timeout,
            "heartbeat": settings.heartbeat,
        }
        if settings.ssl.enabled:
            kwargs["ssl"] = True
            kwargs["ssl_context"] = self._build_ssl_context()

        connection = await self._connect(**kwargs)

        if self._config.debug:
            logger.debug(f"Created RabbitMQ connection to {settings.host}:{settings.port}")
        return connection

    def _build_ssl_context(self) -> ssl.SSLContext:
        options = self._config.connection.ssl
        context = ssl.create_default_context(cafile=options.cafile)
        if options.local_cert:
            context.load_cert_chain(
                options.local_cert,
                keyfile=options.local_key,
                password=options.passphrase,
            )
        if not options.verify_peer:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def _declare_exchange(self) -> None:
        exchange_settings = self._config.exchange
        try:
            if not self._exchange_name:
                # The default exchange always exists and cannot be declared
                self._exchange = self._channel.default_exchange
            else:
                self._exchange = await self._channel.declare_exchange(
                    self._exchange_name,
                    type=self._exchange_type,
                    passive=exchange_settings.passive,
                    durable=exchange_settings.durable,
                    auto_delete=exchange_settings.auto_delete,
                    internal=exchange_settings.internal,
                    timeout=self.operation_timeout,
                )
            self._exchange_declared = True

            if self._config.debug:
                logger.debug(
                    f"Declared exchange '{self._exchange_name}' of type "
                    f"'{self._exchange_type.value}'",
                    extra={
                        "durable": exchange_settings.durable,
                        "auto_delete": exchange_settings.auto_delete,
                    },
                )
        except Exception as e:
            logger.error(
                f"Failed to declare exchange: {e}",
                extra={
                    "exchange": self._exchange_name,
                    "type": self._exchange_type.value,
                    "error": str(e),
                },
            )
            raise

    def __repr__(self) -> str:
        return (
            f"ConnectionManager(connected={self.is_connected}, "
            f"host={self._config.connection.host}, exchange={self._exchange_name!r})"
        )


class ChannelTransaction:
    """Context manager for RabbitMQ transactions.

    Ensures atomic publish of multiple messages within a transaction.
    All messages are either committed together or rolled back.

    Example:
        async with manager.create_transaction(channel):
            await exchange.publish(..., routing_key="a")
            await exchange.publish(..., routing_key="b")
        # Both messages committed atomically

    A failed rollback is logged and the original error is re-raised.
    """

    def __init__(self, channel: AbstractChannel):
        """Initialize transaction.

        Args:
            channel: Channel to run the transaction on (must not use
                publisher confirms)
        """
        self._channel = channel
        self._transaction = None

    async def __aenter__(self) -> "ChannelTransaction":
        """Enter transaction context (tx.select)."""
        self._transaction = self._channel.transaction()
        await self._transaction.select()
        logger.debug("Transaction started")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Commit on success, roll back on error."""
        if exc_type is None:
            await self._transaction.commit()
            logger.debug("Transaction committed")
            return

        if self._channel.is_closed:
            logger.debug("Channel closed, skipping transaction rollback")
            return

        try:
            await self._transaction.rollback()
            logger.debug("Transaction rolled back due to exception")
        except Exception as e:
            logger.error(f"Failed to rollback transaction: {e}")
