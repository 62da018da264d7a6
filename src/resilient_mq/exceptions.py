"""Messaging-related exceptions."""
from typing import Dict, List, Optional


class MessagingError(Exception):
    """Base exception for messaging errors."""

    def __init__(
        self,
        message: str,
        original: Optional[Exception] = None,
    ):
        self.message = message
        self.original = original
        if original:
            super().__init__(f"{message}: {original}")
        else:
            super().__init__(message)


class ConnectionFailureError(MessagingError):
    """RabbitMQ connection could not be established or was lost.

    Raised when:
    - Cannot connect to RabbitMQ
    - Authentication fails
    - The connection is unusable mid-operation
    """


class ConnectionClosedError(ConnectionFailureError):
    """Connection closed by the broker or exhausted reconnection attempts.

    Raised when:
    - Broker sends connection.close
    - Consumer gave up reconnecting after the configured attempts
    """

    def __init__(
        self,
        message: str,
        reply_code: Optional[int] = None,
        reply_text: Optional[str] = None,
        original: Optional[Exception] = None,
    ):
        self.reply_code = reply_code
        self.reply_text = reply_text
        super().__init__(message, original=original)


class ChannelError(MessagingError):
    """Channel-level operation failed."""


class ChannelClosedError(ChannelError):
    """Channel was closed while it was being used.

    Raised when:
    - Broker closes the channel (e.g. 404 NOT_FOUND, 406 PRECONDITION_FAILED)
    - The underlying connection dropped and took the channel with it
    """

    def __init__(
        self,
        message: str,
        reply_code: Optional[int] = None,
        reply_text: Optional[str] = None,
        original: Optional[Exception] = None,
    ):
        self.reply_code = reply_code
        self.reply_text = reply_text
        super().__init__(message, original=original)


class CircuitOpenError(MessagingError):
    """Circuit breaker is open, the protected operation was not attempted.

    Raised when:
    - Failure threshold reached and reset timeout has not elapsed
    """

    def __init__(
        self,
        circuit_name: str,
        state: str = "open",
        retry_after: Optional[float] = None,
    ):
        self.circuit_name = circuit_name
        self.state = state
        self.retry_after = retry_after
        message = f"Circuit '{circuit_name}' is {state}"
        if retry_after is not None:
            message += f" (retry in {retry_after:.1f}s)"
        super().__init__(message)


class SchemaNotFoundError(MessagingError):
    """Validation requested against a schema that was never registered."""

    def __init__(self, schema_name: str):
        self.schema_name = schema_name
        super().__init__(f"Validation schema '{schema_name}' not found")


class MessageValidationError(MessagingError):
    """Message payload failed schema validation.

    Carries the per-field error messages so consumers can decide to
    dead-letter the message instead of requeueing it.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[Dict[str, List[str]]] = None,
    ):
        self.errors = errors or {}
        super().__init__(message)


class SerializationError(MessagingError):
    """Payload could not be serialized or deserialized."""


class PublishError(MessagingError):
    """Publishing did not succeed.

    Raised when:
    - Publisher reported failure (drives retry attempts)
    - A batch message is missing its routing key
    """


class QueueError(MessagingError):
    """Queue-related operation failed.

    Raised when:
    - Predefined queue key is not configured
    - Queue declaration or binding is invalid
    """
