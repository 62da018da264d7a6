"""Unit tests for retry policy."""
import pytest

from resilient_mq.config import ResilienceSettings
from resilient_mq.retry import RetryPolicy
from resilient_mq.testing import RecordingSleep


def test_get_delay_doubles_with_jitter_tolerance():
    """Should double the delay per attempt (with ±20% jitter)."""
    policy = RetryPolicy(base_delay_ms=100, max_delay_ms=5000, jitter_factor=0.2)

    assert 80 <= policy.get_delay(1) <= 120
    assert 160 <= policy.get_delay(2) <= 240
    assert 320 <= policy.get_delay(3) <= 480


def test_get_delay_without_jitter_is_exact():
    """Should return exact exponential delays when jitter is disabled."""
    policy = RetryPolicy(base_delay_ms=100, max_delay_ms=5000, jitter_factor=0)

    assert policy.get_delay(1) == 100
    assert policy.get_delay(2) == 200
    assert policy.get_delay(4) == 800


def test_get_delay_never_exceeds_max():
    """Should cap delays at max_delay_ms even with jitter."""
    policy = RetryPolicy(base_delay_ms=100, max_delay_ms=1000, jitter_factor=1.0)

    for attempt in range(1, 20):
        delay = policy.get_delay(attempt)
        assert 0 <= delay <= 1000


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_delay_ms": -1},
        {"max_delay_ms": -5},
        {"jitter_factor": 1.5},
        {"jitter_factor": -0.1},
    ],
)
def test_invalid_parameters_rejected(kwargs):
    """Should reject out-of-range parameters."""
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


async def test_execute_returns_first_success():
    """Should return without sleeping when the first attempt succeeds."""
    sleep = RecordingSleep()
    policy = RetryPolicy(sleep=sleep)

    async def operation():
        return "ok"

    assert await policy.execute(operation) == "ok"
    assert sleep.calls == []


async def test_execute_retries_until_success():
    """Should retry failed attempts and return the eventual result."""
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=3, base_delay_ms=100, jitter_factor=0, sleep=sleep)
    calls = []

    async def operation():
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("transient")
        return "done"

    assert await policy.execute(operation) == "done"
    assert len(calls) == 3
    assert sleep.calls == [0.1, 0.2]


async def test_execute_raises_last_error_after_max_attempts():
    """Should re-raise the last error once attempts are exhausted."""
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=3, sleep=sleep)
    calls = []

    def operation():
        calls.append(1)
        raise ConnectionError(f"failure {len(calls)}")

    with pytest.raises(ConnectionError, match="failure 3"):
        await policy.execute(operation)

    assert len(calls) == 3
    assert len(sleep.calls) == 2


async def test_execute_does_not_retry_other_exceptions():
    """Should propagate non-retryable errors immediately."""
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=5, sleep=sleep)
    calls = []

    async def operation():
        calls.append(1)
        raise ValueError("permanent")

    with pytest.raises(ValueError):
        await policy.execute(operation, retryable_exceptions=(ConnectionError,))

    assert len(calls) == 1
    assert sleep.calls == []


async def test_execute_calls_on_retry_before_each_sleep():
    """Should report attempt, error and delay to on_retry."""
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=3, base_delay_ms=50, jitter_factor=0, sleep=sleep)
    retries = []

    def operation():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await policy.execute(
            operation,
            on_retry=lambda attempt, error, delay_ms: retries.append((attempt, str(error), delay_ms)),
        )

    assert retries == [(1, "boom", 50), (2, "boom", 100)]


async def test_execute_single_attempt_never_sleeps():
    """Should not retry when max_attempts is 1."""
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=1, sleep=sleep)

    async def operation():
        raise RuntimeError("once")

    with pytest.raises(RuntimeError):
        await policy.execute(operation)

    assert sleep.calls == []


def test_from_settings():
    """Should build a policy from resilience settings."""
    settings = ResilienceSettings(max_attempts=5, base_delay_ms=10, max_delay_ms=100, jitter_factor=0.5)

    policy = RetryPolicy.from_settings(settings)

    assert policy.max_attempts == 5
    assert policy.base_delay_ms == 10
    assert policy.max_delay_ms == 100
    assert policy.jitter_factor == 0.5
