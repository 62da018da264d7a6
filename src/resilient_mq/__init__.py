"""Resilient messaging on RabbitMQ.

Provides:
- Configuration management (MessagingConfig)
- Connection management (ConnectionManager)
- Publisher API (Publisher)
- Consumer API with reconnection (Consumer)
- Retry policy (RetryPolicy)
- Circuit breaker (CircuitBreaker, circuit_breaker decorator)
- Serializers (JSON, MessagePack)
- Schema validation (MessageValidator)
- Telemetry (Telemetry)
- Messaging facade (MessagingService, MessagingServiceFactory)
- Domain events (EventPublisher, EventConsumer)
"""

# Configuration
from resilient_mq.config import (
    ConnectionSettings,
    ConsumerSettings,
    ExchangeSettings,
    MessagingConfig,
    PublisherSettings,
    QueueDefinition,
    ResilienceSettings,
    SerializationSettings,
    SSLSettings,
)

# Exceptions
from resilient_mq.exceptions import (
    ChannelClosedError,
    ChannelError,
    CircuitOpenError,
    ConnectionClosedError,
    ConnectionFailureError,
    MessageValidationError,
    MessagingError,
    PublishError,
    QueueError,
    SchemaNotFoundError,
    SerializationError,
)

# Core logic
from resilient_mq.retry import RetryPolicy
from resilient_mq.circuit_breaker import CircuitBreaker, CircuitState, circuit_breaker
from resilient_mq.serializers import (
    JSONSerializer,
    MessagePackSerializer,
    SerializationFormat,
    Serializer,
    create_serializer,
)
from resilient_mq.validation import MessageValidator
from resilient_mq.telemetry import Operation, Telemetry
from resilient_mq.routing import routing_key_matches

# Infrastructure
from resilient_mq.connection import ChannelTransaction, ConnectionManager

# Publisher/Consumer APIs
from resilient_mq.publisher import Publisher, generate_message_id
from resilient_mq.consumer import Consumer, QueueConfig

# Facade
from resilient_mq.service import MessagingService, MessagingServiceFactory
from resilient_mq.events import EventConsumer, EventPublisher

__all__ = [
    # Configuration
    "MessagingConfig",
    "ConnectionSettings",
    "SSLSettings",
    "ExchangeSettings",
    "ResilienceSettings",
    "ConsumerSettings",
    "PublisherSettings",
    "SerializationSettings",
    "QueueDefinition",
    # Exceptions
    "MessagingError",
    "ConnectionFailureError",
    "ConnectionClosedError",
    "ChannelError",
    "ChannelClosedError",
    "CircuitOpenError",
    "SchemaNotFoundError",
    "MessageValidationError",
    "SerializationError",
    "PublishError",
    "QueueError",
    # Core logic
    "RetryPolicy",
    "CircuitBreaker",
    "CircuitState",
    "circuit_breaker",
    "Serializer",
    "JSONSerializer",
    "MessagePackSerializer",
    "SerializationFormat",
    "create_serializer",
    "MessageValidator",
    "Telemetry",
    "Operation",
    "routing_key_matches",
    # Infrastructure
    "ConnectionManager",
    "ChannelTransaction",
    # Publisher/Consumer
    "Publisher",
    "generate_message_id",
    "Consumer",
    "QueueConfig",
    # Facade
    "MessagingService",
    "MessagingServiceFactory",
    "EventPublisher",
    "EventConsumer",
]
