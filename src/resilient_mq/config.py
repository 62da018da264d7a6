"""RabbitMQ configuration and connection URL management."""
import logging
from typing import Any, Dict, List, Optional

from aio_pika import ExchangeType
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from resilient_mq.serializers import SerializationFormat

logger = logging.getLogger(__name__)

_MISSING = object()


class SSLSettings(BaseModel):
    """TLS options for the broker connection."""

    enabled: bool = Field(default=False, description="Use amqps")
    verify_peer: bool = Field(default=True, description="Verify broker certificate")
    cafile: Optional[str] = Field(default=None, description="CA bundle path")
    local_cert: Optional[str] = Field(default=None, description="Client certificate path")
    local_key: Optional[str] = Field(default=None, description="Client private key path")
    passphrase: Optional[str] = Field(default=None, description="Private key passphrase")


class ConnectionSettings(BaseModel):
    """Broker endpoint and transport timeouts."""

    host: str = Field(default="localhost", description="RabbitMQ host address")
    port: int = Field(default=5672, description="RabbitMQ AMQP port")
    user: str = Field(default="guest", description="RabbitMQ username")
    password: str = Field(default="guest", description="RabbitMQ password")
    vhost: str = Field(default="/", description="RabbitMQ virtual host")
    heartbeat: int = Field(default=60, description="Heartbeat interval in seconds")
    connection_timeout: float = Field(
        default=3.0,
        description="Connection timeout in seconds"
    )
    read_write_timeout: float = Field(
        default=3.0,
        description="Timeout in seconds for broker RPCs (declare, bind, qos)"
    )
    keepalive: bool = Field(
        default=False,
        description="TCP keepalive; accepted for compatibility, aio-pika relies on heartbeats"
    )
    ssl: SSLSettings = Field(default_factory=SSLSettings)

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is in the TCP range."""
        if not 0 < v < 65536:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("heartbeat")
    @classmethod
    def validate_heartbeat(cls, v: int) -> int:
        """Validate heartbeat is non-negative."""
        if v < 0:
            raise ValueError("heartbeat must be >= 0")
        return v

    @field_validator("connection_timeout", "read_write_timeout")
    @classmethod
    def validate_timeouts(cls, v: float) -> float:
        """Validate timeouts are positive."""
        if v <= 0:
            raise ValueError("timeouts must be > 0")
        return v


class ExchangeSettings(BaseModel):
    """Default exchange declared by the connection manager."""

    name: str = Field(default="booking_events", description="Exchange name")
    type: ExchangeType = Field(default=ExchangeType.TOPIC, description="Exchange type")
    passive: bool = Field(default=False, description="Only check the exchange exists")
    durable: bool = Field(default=True, description="Survive broker restarts")
    auto_delete: bool = Field(default=False, description="Delete when unused")
    internal: bool = Field(default=False, description="Reject client publishes")


class ResilienceSettings(BaseModel):
    """Retry and circuit breaker tuning for publishing."""

    max_attempts: int = Field(default=3, description="Max publish attempts")
    base_delay_ms: int = Field(default=100, description="Initial backoff delay in ms")
    max_delay_ms: int = Field(default=5000, description="Backoff ceiling in ms")
    jitter_factor: float = Field(default=0.2, description="Relative jitter (0-1)")
    failure_threshold: int = Field(
        default=5,
        description="Number of failures before circuit opens"
    )
    reset_timeout: float = Field(
        default=30.0,
        description="Seconds an open circuit waits before half-open"
    )

    @field_validator("max_attempts", "failure_threshold")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate counts are at least one."""
        if v < 1:
            raise ValueError("value must be >= 1")
        return v

    @field_validator("base_delay_ms", "max_delay_ms")
    @classmethod
    def validate_delays(cls, v: int) -> int:
        """Validate delays are non-negative."""
        if v < 0:
            raise ValueError("delays must be >= 0")
        return v

    @field_validator("jitter_factor")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        """Validate jitter is within [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("jitter_factor must be between 0 and 1")
        return v


class ConsumerSettings(BaseModel):
    """Consumer acknowledgement, QoS and reconnection behaviour."""

    throw_exceptions: bool = Field(
        default=False,
        description="Re-raise handler errors out of the consume loop"
    )
    auto_ack: bool = Field(default=False, description="Default auto-ack mode")
    prefetch_count: int = Field(
        default=1,
        description="Number of messages to prefetch (QoS), 0 disables"
    )
    wait_timeout: float = Field(
        default=0,
        description="Wake-up interval of the consume loop in seconds, 0 waits indefinitely"
    )
    reconnect_delay: float = Field(
        default=5.0,
        description="Initial reconnect delay in seconds, doubles per failure"
    )
    reconnect_max_retries: int = Field(default=3, description="Reconnect attempts")
    stop_on_critical_error: bool = Field(
        default=False,
        description="Stop consuming on non-connection errors"
    )
    requeue_on_error: bool = Field(
        default=False,
        description="Requeue messages whose handler raised"
    )

    @field_validator("prefetch_count", "reconnect_max_retries")
    @classmethod
    def validate_non_negative_int(cls, v: int) -> int:
        """Validate counts are non-negative."""
        if v < 0:
            raise ValueError("value must be >= 0")
        return v

    @field_validator("wait_timeout", "reconnect_delay")
    @classmethod
    def validate_non_negative_float(cls, v: float) -> float:
        """Validate durations are non-negative."""
        if v < 0:
            raise ValueError("value must be >= 0")
        return v


class PublisherSettings(BaseModel):
    """Publisher batching options."""

    batch_size: int = Field(default=100, description="Messages per batch chunk")
    confirm_select: bool = Field(
        default=False,
        description="Open channels with publisher confirms (disables transactions)"
    )

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        """Validate batch size is positive."""
        if v < 1:
            raise ValueError("batch_size must be >= 1")
        return v


class SerializationSettings(BaseModel):
    """Wire format of message bodies."""

    format: SerializationFormat = Field(
        default=SerializationFormat.JSON,
        description="Default serialization format"
    )


class QueueDefinition(BaseModel):
    """Queue declared from configuration by key."""

    name: str
    binding_keys: List[str] = Field(default_factory=list)
    durable: bool = True
    auto_delete: bool = False
    arguments: Dict[str, Any] = Field(default_factory=dict)


class MessagingConfig(BaseSettings):
    """Messaging configuration with connection, exchange and behaviour settings.

    Settings are loaded from environment variables prefixed with ``RABBITMQ_``
    (nested sections use ``__``, e.g. ``RABBITMQ_CONNECTION__HOST``) with
    sensible defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="RABBITMQ_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    exchange: ExchangeSettings = Field(default_factory=ExchangeSettings)
    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)
    consumer: ConsumerSettings = Field(default_factory=ConsumerSettings)
    publisher: PublisherSettings = Field(default_factory=PublisherSettings)
    serialization: SerializationSettings = Field(default_factory=SerializationSettings)
    queues: Dict[str, QueueDefinition] = Field(
        default_factory=dict,
        description="Predefined queues keyed by logical name"
    )
    debug: bool = Field(default=False, description="Verbose subsystem logging")
    log_channel: str = Field(
        default="resilient_mq",
        description="Logger name the subsystem logs under"
    )

    @property
    def connection_url(self) -> str:
        """Construct AMQP connection URL."""
        conn = self.connection
        scheme = "amqps" if conn.ssl.enabled else "amqp"
        # Strip leading slash from vhost to avoid double slashes in URL
        vhost = conn.vhost.lstrip("/") if conn.vhost != "/" else ""
        return f"{scheme}://{conn.user}:{conn.password}@{conn.host}:{conn.port}/{vhost}"

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a setting by dotted path.

        Args:
            key: Path such as ``"consumer.prefetch_count"``
            default: Returned when any segment is missing

        Returns:
            The setting value or ``default``
        """
        current: Any = self
        for part in key.split("."):
            if isinstance(current, dict):
                current = current.get(part, _MISSING)
            else:
                current = getattr(current, part, _MISSING)
            if current is _MISSING:
                return default
        return current
