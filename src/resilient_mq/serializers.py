"""Message body serialization strategies."""
import json
import logging
from enum import Enum
from typing import Any, Union

import msgspec

from resilient_mq.exceptions import SerializationError

logger = logging.getLogger(__name__)


class SerializationFormat(str, Enum):
    """Supported wire formats, as carried in the ``serialization_format`` header."""

    JSON = "json"
    MSGPACK = "msgpack"


class Serializer:
    """Base class for message serializers.

    Defines interface for converting between Python objects and message bodies.
    """

    format: SerializationFormat
    content_type: str

    def serialize(self, value: Any) -> bytes:
        """Serialize value to bytes.

        Args:
            value: Python object to serialize

        Returns:
            Serialized bytes

        Raises:
            SerializationError: If serialization fails
        """
        raise NotImplementedError("Subclasses must implement serialize()")

    def deserialize(self, data: bytes) -> Any:
        """Deserialize bytes to Python object.

        Args:
            data: Serialized bytes

        Returns:
            Deserialized Python object

        Raises:
            SerializationError: If deserialization fails
        """
        raise NotImplementedError("Subclasses must implement deserialize()")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(content_type={self.content_type!r})"


class JSONSerializer(Serializer):
    """JSON serializer producing UTF-8 bodies.

    Non-ASCII characters and slashes are written as-is rather than escaped.
    """

    format = SerializationFormat.JSON
    content_type = "application/json"

    def serialize(self, value: Any) -> bytes:
        """Serialize value to JSON bytes."""
        try:
            return json.dumps(value, ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            logger.error(f"JSON serialization failed: {e}")
            raise SerializationError("Value is not JSON-serializable", original=e) from e

    def deserialize(self, data: bytes) -> Any:
        """Deserialize JSON bytes to Python object."""
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"JSON deserialization failed: {e}")
            raise SerializationError("Invalid JSON data", original=e) from e


class MessagePackSerializer(Serializer):
    """MessagePack serializer for compact binary bodies."""

    format = SerializationFormat.MSGPACK
    content_type = "application/x-msgpack"

    def serialize(self, value: Any) -> bytes:
        """Serialize value to MessagePack bytes."""
        try:
            return msgspec.msgpack.encode(value)
        except (TypeError, msgspec.MsgspecError) as e:
            logger.error(f"MessagePack serialization failed: {e}")
            raise SerializationError("Value is not MessagePack-serializable", original=e) from e

    def deserialize(self, data: bytes) -> Any:
        """Deserialize MessagePack bytes to Python object."""
        try:
            return msgspec.msgpack.decode(data)
        except msgspec.MsgspecError as e:
            logger.error(f"MessagePack deserialization failed: {e}")
            raise SerializationError("Invalid MessagePack data", original=e) from e


def create_serializer(serialization_format: Union[str, SerializationFormat] = "json") -> Serializer:
    """Factory function to get serializer by format.

    Args:
        serialization_format: ``"json"`` or ``"msgpack"``

    Returns:
        Serializer instance

    Raises:
        ValueError: If the format is not supported

    Example:
        serializer = create_serializer("msgpack")  # Returns MessagePackSerializer
    """
    serializers = {
        SerializationFormat.JSON: JSONSerializer,
        SerializationFormat.MSGPACK: MessagePackSerializer,
    }

    try:
        fmt = SerializationFormat(serialization_format)
    except ValueError:
        raise ValueError(f"Unsupported serialization format: {serialization_format}") from None

    return serializers[fmt]()
