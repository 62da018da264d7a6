"""Circuit breaker pattern to prevent cascading failures."""
import inspect
import logging
import time
from enum import Enum
from functools import wraps
from typing import Any, Callable, Optional

from resilient_mq.config import ResilienceSettings
from resilient_mq.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Circuit breaker to stop calling failing operations.

    After ``failure_threshold`` failures the circuit opens and rejects
    all calls for ``reset_timeout`` seconds. The next call after that runs
    as a half-open probe: success closes the circuit, failure re-opens it.

    Failures are counted since the circuit last closed; successes while
    closed do not clear the count.
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            name: Circuit name used in logs and errors
            failure_threshold: Number of failures before opening circuit
            reset_timeout: Seconds to wait before moving to half-open
            clock: Monotonic time source in seconds
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None

    @classmethod
    def from_settings(cls, name: str, settings: ResilienceSettings) -> "CircuitBreaker":
        """Build a breaker from the ``resilience`` config section."""
        return cls(
            name=name,
            failure_threshold=settings.failure_threshold,
            reset_timeout=settings.reset_timeout,
        )

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        return self._state

    async def execute(self, operation: Callable[[], Any]) -> Any:
        """Execute operation with circuit breaker protection.

        Args:
            operation: Zero-argument callable, sync or async

        Returns:
            Result of operation

        Raises:
            CircuitOpenError: If circuit is open (operation not invoked)
            Exception: Re-raises any exception from operation
        """
        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0.0)
            if elapsed < self.reset_timeout:
                retry_after = self.reset_timeout - elapsed
                logger.warning(
                    f"Circuit '{self.name}' is open (failures={self.failure_count}, "
                    f"remaining_timeout={retry_after:.1f}s)"
                )
                raise CircuitOpenError(self.name, self._state.value, retry_after)

            self._state = CircuitState.HALF_OPEN
            logger.info(f"Circuit '{self.name}' moved to half-open state")

        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._on_failure(e)
            raise

        self._on_success()
        return result

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute ``func(*args, **kwargs)`` with circuit breaker protection."""
        return await self.execute(lambda: func(*args, **kwargs))

    def _on_success(self) -> None:
        """Handle successful call."""
        if self._state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit '{self.name}' closed (half-open probe succeeded)")
            self.reset()

    def _on_failure(self, error: Exception) -> None:
        """Handle failed call."""
        self.failure_count += 1
        self.last_failure_time = self._clock()

        logger.warning(
            f"Circuit '{self.name}' failure #{self.failure_count}/{self.failure_threshold}: {error}"
        )

        # In half-open state, any failure immediately opens the circuit
        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(f"Circuit '{self.name}' OPEN (half-open probe failed)")
        elif self.failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                f"Circuit '{self.name}' OPEN (threshold {self.failure_threshold} reached)"
            )

    def reset(self) -> None:
        """Force the circuit closed and clear the failure count."""
        self.failure_count = 0
        self.last_failure_time = None
        self._state = CircuitState.CLOSED
        logger.debug(f"Circuit '{self.name}' reset to closed state")

    @property
    def is_open(self) -> bool:
        """Check if circuit breaker is currently open."""
        return self._state == CircuitState.OPEN

    @property
    def is_closed(self) -> bool:
        """Check if circuit breaker is currently closed."""
        return self._state == CircuitState.CLOSED

    @property
    def is_half_open(self) -> bool:
        """Check if circuit breaker is probing."""
        return self._state == CircuitState.HALF_OPEN

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
            f"failures={self.failure_count}, threshold={self.failure_threshold})"
        )


def circuit_breaker(
    name: Optional[str] = None,
    failure_threshold: int = 5,
    reset_timeout: float = 30.0,
):
    """Decorator to apply circuit breaker to async functions.

    Args:
        name: Circuit name, defaults to the function name
        failure_threshold: Number of failures before opening circuit
        reset_timeout: Seconds to wait before half-open

    Usage:
        @circuit_breaker(failure_threshold=3, reset_timeout=60)
        async def publish_message():
            ...

        publish_message.circuit_breaker.reset()
    """

    def decorator(func):
        breaker = CircuitBreaker(
            name=name or func.__name__,
            failure_threshold=failure_threshold,
            reset_timeout=reset_timeout,
        )

        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await breaker.call(func, *args, **kwargs)

        wrapper.circuit_breaker = breaker

        return wrapper

    return decorator
