"""Log context management using contextvars for async-safe metadata."""
import contextvars
import uuid
from typing import Any, Dict, Optional


_correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)
_operation_name_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "operation_name", default=None
)
_extra_context_var: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "extra_context", default={}
)


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID from context."""
    return _correlation_id_var.get()


def get_operation_name() -> Optional[str]:
    """Get current operation name from context."""
    return _operation_name_var.get()


def get_context() -> Dict[str, Any]:
    """Get all context values as a dictionary."""
    return {
        "correlation_id": get_correlation_id(),
        "operation_name": get_operation_name(),
        **_extra_context_var.get(),
    }


def new_correlation_id() -> str:
    """Generate a fresh correlation ID."""
    return str(uuid.uuid4())


class log_context:
    """Context manager adding metadata to every log record in its scope.

    Works with both ``with`` and ``async with``; values are restored on exit.

    Example:
        async with log_context(correlation_id=message.correlation_id, queue="orders"):
            logger.info("Handling order")
    """

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        operation_name: Optional[str] = None,
        **extra_context: Any,
    ):
        """Initialize log context.

        Args:
            correlation_id: Correlation ID propagated to published events
            operation_name: Operation name (e.g., "consume")
            **extra_context: Additional context key-value pairs
        """
        self.correlation_id = correlation_id
        self.operation_name = operation_name
        self.extra_context = extra_context
        self._tokens = []

    def __enter__(self) -> "log_context":
        if self.correlation_id is not None:
            self._tokens.append((_correlation_id_var, _correlation_id_var.set(self.correlation_id)))
        if self.operation_name is not None:
            self._tokens.append((_operation_name_var, _operation_name_var.set(self.operation_name)))
        if self.extra_context:
            merged = {**_extra_context_var.get(), **self.extra_context}
            self._tokens.append((_extra_context_var, _extra_context_var.set(merged)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)

    async def __aenter__(self) -> "log_context":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)
