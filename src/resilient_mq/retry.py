"""Retry policy with exponential backoff and jitter."""
import asyncio
import inspect
import logging
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from resilient_mq.config import ResilienceSettings

logger = logging.getLogger(__name__)

RetryCallback = Callable[[int, BaseException, float], Any]


class RetryPolicy:
    """Re-run a failing operation with exponential backoff.

    Delay for attempt ``n`` (1-based) is ``base_delay_ms * 2**(n-1)``,
    capped at ``max_delay_ms`` and spread by ``±jitter_factor`` so that
    concurrent retries don't stampede the broker.

    Example:
        policy = RetryPolicy(max_attempts=3, base_delay_ms=100)
        result = await policy.execute(lambda: publisher.publish("a.b", data))
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_ms: float = 100,
        max_delay_ms: float = 5000,
        jitter_factor: float = 0.2,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize retry policy.

        Args:
            max_attempts: Total attempts including the first (>= 1)
            base_delay_ms: Delay before the first retry in milliseconds
            max_delay_ms: Upper bound for any delay in milliseconds
            jitter_factor: Relative jitter applied to each delay (0-1)
            sleep: Awaitable sleep taking seconds
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay_ms < 0 or max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        if not 0.0 <= jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be between 0 and 1")

        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter_factor = jitter_factor
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: ResilienceSettings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "RetryPolicy":
        """Build a policy from the ``resilience`` config section."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_ms=settings.base_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            jitter_factor=settings.jitter_factor,
            sleep=sleep,
        )

    def get_delay(self, attempt: int) -> float:
        """Calculate the delay after a failed attempt.

        Args:
            attempt: Attempt number that just failed (1-based)

        Returns:
            Delay in milliseconds within ``[0, max_delay_ms]``
        """
        delay = min(self.max_delay_ms, self.base_delay_ms * (2 ** (attempt - 1)))
        jitter = delay * self.jitter_factor
        delay = delay - jitter + random.random() * 2 * jitter
        return max(0.0, min(float(self.max_delay_ms), delay))

    async def execute(
        self,
        operation: Callable[[], Any],
        retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        on_retry: Optional[RetryCallback] = None,
    ) -> Any:
        """Run operation, retrying on retryable failures.

        Args:
            operation: Zero-argument callable, sync or async
            retryable_exceptions: Exception kinds that trigger a retry
                (subclasses match)
            on_retry: Called as ``on_retry(attempt, error, delay_ms)`` before
                each sleep

        Returns:
            Result of the first successful attempt

        Raises:
            Exception: The last error, or the first non-retryable one
        """
        attempt = 1
        while True:
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
                return result
            except retryable_exceptions as e:
                if attempt >= self.max_attempts:
                    raise

                delay_ms = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed, "
                    f"retrying in {delay_ms:.0f}ms: {e}",
                    extra={
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "delay_ms": delay_ms,
                        "error": str(e),
                    },
                )

                if on_retry is not None:
                    on_retry(attempt, e, delay_ms)

                await self._sleep(delay_ms / 1000)
                attempt += 1

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"base_delay_ms={self.base_delay_ms}, max_delay_ms={self.max_delay_ms}, "
            f"jitter_factor={self.jitter_factor})"
        )
