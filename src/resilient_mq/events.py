"""Domain event publishing and dispatching over the messaging facade."""
import inspect
import logging
import re
import time
import uuid
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Type

from aio_pika.abc import AbstractIncomingMessage
from pydantic import BaseModel

from resilient_mq.routing import routing_key_matches
from resilient_mq.service import MessagingService

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any], AbstractIncomingMessage], Any]

METADATA_KEY = "_metadata"


def derive_routing_key(event_class: Type[Any]) -> str:
    """Derive a routing key from an event class name.

    Example:
        derive_routing_key(OrderCreated)  # "order.created"
        derive_routing_key(OrderShippedEvent)  # "order.shipped"
    """
    name = event_class.__name__
    if name.endswith("Event") and name != "Event":
        name = name[: -len("Event")]
    return re.sub(r"(?<!^)(?=[A-Z])", ".", name).lower()


class EventPublisher:
    """Publishes Pydantic event models with routing metadata.

    Each event is dumped to a JSON-compatible dict and tagged with
    ``_metadata`` (event name, timestamp, id) so that ``EventConsumer`` can
    dispatch it without relying on the routing key.

    Example:
        class OrderCreated(BaseModel):
            order_id: int

        events = EventPublisher(service)
        await events.publish(OrderCreated(order_id=1))  # routing key "order.created"
    """

    def __init__(
        self,
        service: MessagingService,
        event_map: Optional[Mapping[Type[BaseModel], str]] = None,
    ):
        """Initialize event publisher.

        Args:
            service: Messaging facade to publish through
            event_map: Event class to routing key overrides
        """
        self._service = service
        self._event_map: Dict[Type[BaseModel], str] = dict(event_map or {})

    def add_event(self, event_class: Type[BaseModel], routing_key: str) -> "EventPublisher":
        """Map an event class to a routing key."""
        self._event_map[event_class] = routing_key
        return self

    def routing_key_for(self, event_class: Type[BaseModel]) -> str:
        """Routing key for an event class (mapped or derived from its name)."""
        return self._event_map.get(event_class) or derive_routing_key(event_class)

    async def publish(
        self,
        event: BaseModel,
        routing_key: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Publish an event.

        Returns:
            True if published, False otherwise

        Raises:
            CircuitOpenError: If the publisher circuit is open
        """
        routing_key = routing_key or self.routing_key_for(type(event))
        data = event.model_dump(mode="json")
        data[METADATA_KEY] = {
            "event": type(event).__name__,
            "timestamp": time.time(),
            "id": str(uuid.uuid4()),
        }
        return await self._service.publish(routing_key, data, options)


class EventConsumer:
    """Dispatches consumed events to handlers by event name or routing key.

    Handlers are looked up by the ``_metadata.event`` name (or the ``event``
    field of a ``publish_event`` envelope), then by exact routing key, then by
    topic pattern (``*`` one word, ``#`` any number of words). Unmapped events
    are acknowledged with a warning; handler errors propagate so the facade
    rejects the message.

    Example:
        events = EventConsumer(service)
        events.add_event_mapping("order.*", handle_order)
        await events.consume_events("orders", ["order.#"])
    """

    def __init__(
        self,
        service: MessagingService,
        event_map: Optional[Mapping[str, EventHandler]] = None,
    ):
        """Initialize event consumer.

        Args:
            service: Messaging facade to consume through
            event_map: Event name or routing pattern to handler
        """
        self._service = service
        self._event_map: Dict[str, EventHandler] = dict(event_map or {})

    def add_event_mapping(self, pattern: str, handler: EventHandler) -> "EventConsumer":
        """Map an event name, routing key or topic pattern to a handler."""
        self._event_map[pattern] = handler
        return self

    def set_event_map(self, event_map: Mapping[str, EventHandler]) -> "EventConsumer":
        """Replace all mappings."""
        self._event_map = dict(event_map)
        return self

    async def consume_events(
        self,
        queue_name: str,
        binding_keys: Optional[Iterable[str]] = None,
    ) -> None:
        """Consume a queue, dispatching every message to its handler."""
        await self._service.consume(queue_name, self.process_message, binding_keys)

    async def process_message(self, data: Any, message: AbstractIncomingMessage) -> bool:
        """Dispatch one decoded message.

        Returns:
            True once handled or skipped (so the message is acknowledged)
        """
        if not isinstance(data, dict):
            logger.warning(
                f"Ignoring non-object event body with routing key {message.routing_key}"
            )
            return True

        event_name, payload = self._unwrap(data)
        handler = self.resolve_handler(event_name, message.routing_key or "")
        if handler is None:
            logger.warning(
                f"No handler for event {event_name!r} with routing key {message.routing_key}"
            )
            return True

        result = handler(payload, message)
        if inspect.isawaitable(result):
            await result

        logger.debug(f"Dispatched event {event_name or message.routing_key}")
        return True

    def resolve_handler(self, event_name: Optional[str], routing_key: str) -> Optional[EventHandler]:
        """Find the handler for an event name or routing key."""
        if event_name and event_name in self._event_map:
            return self._event_map[event_name]
        if routing_key in self._event_map:
            return self._event_map[routing_key]

        for pattern, handler in self._event_map.items():
            if ("*" in pattern or "#" in pattern) and routing_key_matches(pattern, routing_key):
                return handler
        return None

    @staticmethod
    def _unwrap(data: Dict[str, Any]):
        """Split a body into event name and handler payload."""
        if METADATA_KEY in data:
            payload = {k: v for k, v in data.items() if k != METADATA_KEY}
            metadata = data.get(METADATA_KEY) or {}
            return metadata.get("event"), payload

        if "event" in data and "payload" in data:
            return data["event"], data["payload"]

        return None, data
