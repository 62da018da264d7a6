"""Operation timing and counters for messaging operations."""
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Samples kept per timer to prevent unbounded growth
MAX_TIMER_SAMPLES = 1000


@dataclass
class Operation:
    """A timed operation started by ``Telemetry.start_operation``."""

    name: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    start: float = field(default_factory=time.perf_counter)
    finished: bool = False

    @property
    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self.start) * 1000, 2)


class Telemetry:
    """Track messaging operations for observability.

    Each ``start_operation`` call returns its own ``Operation`` so concurrent
    publishes and message handlers time independently. Finishing an operation
    logs its metrics and feeds thread-safe aggregates:
    - Counters (``<operation>.success`` / ``<operation>.failure``)
    - Timers (duration samples per operation)
    """

    def __init__(self):
        """Initialize metrics storage."""
        self._lock = threading.RLock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._timers: Dict[str, List[float]] = defaultdict(list)

    def start_operation(self, name: str) -> Operation:
        """Start timing an operation.

        Args:
            name: Operation name (e.g., "publish", "consume")

        Returns:
            Operation handle to pass to ``record_success`` / ``record_failure``
        """
        return Operation(name=name)

    def record_success(self, operation: Operation, **data: Any) -> Dict[str, Any]:
        """Finish an operation successfully and log its metrics.

        Args:
            operation: Handle from ``start_operation``
            **data: Extra fields to include (routing_key, message_id, ...)

        Returns:
            The recorded metrics, empty if the operation was already finished
        """
        metrics = self._end_operation(operation, {"status": "success", **data})
        if metrics:
            logger.info(f"Messaging operation '{operation.name}' completed", extra=metrics)
        return metrics

    def record_failure(self, operation: Operation, error: BaseException, **data: Any) -> Dict[str, Any]:
        """Finish an operation as failed and log its metrics.

        Args:
            operation: Handle from ``start_operation``
            error: Exception that ended the operation
            **data: Extra fields to include

        Returns:
            The recorded metrics, empty if the operation was already finished
        """
        metrics = self._end_operation(
            operation,
            {
                "status": "failure",
                "error": str(error),
                "error_class": type(error).__name__,
                **data,
            },
        )
        if metrics:
            logger.error(f"Messaging operation '{operation.name}' failed", extra=metrics)
        return metrics

    def increment(self, metric_name: str, value: int = 1) -> None:
        """Increment a counter metric."""
        with self._lock:
            self._counters[metric_name] += value

    def record_time(self, metric_name: str, duration_ms: float) -> None:
        """Record a duration in milliseconds."""
        with self._lock:
            samples = self._timers[metric_name]
            samples.append(duration_ms)
            if len(samples) > MAX_TIMER_SAMPLES:
                self._timers[metric_name] = samples[-MAX_TIMER_SAMPLES:]

    def get_counter(self, metric_name: str) -> int:
        """Get current counter value."""
        with self._lock:
            return self._counters.get(metric_name, 0)

    def get_timer_stats(self, metric_name: str) -> Dict[str, float]:
        """Get statistics for a timer metric.

        Returns:
            Dict with count, min, max, avg and percentiles
        """
        with self._lock:
            values = list(self._timers.get(metric_name, []))

        if not values:
            return {"count": 0}

        return {
            "count": len(values),
            "min": min(values),
            "max": max(values),
            "avg": sum(values) / len(values),
            "p50": self._percentile(values, 50),
            "p95": self._percentile(values, 95),
            "p99": self._percentile(values, 99),
        }

    def get_summary(self) -> Dict[str, Any]:
        """Get complete metrics summary."""
        with self._lock:
            timer_names = list(self._timers.keys())
            counters = dict(self._counters)

        return {
            "counters": counters,
            "timers": {name: self.get_timer_stats(name) for name in timer_names},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def reset(self, metric_name: Optional[str] = None) -> None:
        """Reset one metric or all of them."""
        with self._lock:
            if metric_name:
                self._counters.pop(metric_name, None)
                self._timers.pop(metric_name, None)
            else:
                self._counters.clear()
                self._timers.clear()

    def _end_operation(self, operation: Operation, data: Dict[str, Any]) -> Dict[str, Any]:
        if operation.finished:
            return {}
        operation.finished = True

        duration_ms = operation.elapsed_ms
        metrics = {
            "operation": operation.name,
            "started_at": operation.started_at.isoformat(),
            "duration_ms": duration_ms,
            **data,
        }

        self.increment(f"{operation.name}.{data['status']}")
        self.record_time(operation.name, duration_ms)
        return metrics

    @staticmethod
    def _percentile(values: List[float], p: int) -> float:
        sorted_values = sorted(values)
        k = (len(sorted_values) - 1) * (p / 100)
        f = int(k)
        c = min(f + 1, len(sorted_values) - 1)
        if f == c:
            return sorted_values[f]
        return sorted_values[f] + (k - f) * (sorted_values[c] - sorted_values[f])

    def __repr__(self) -> str:
        with self._lock:
            return f"Telemetry(counters={len(self._counters)}, timers={len(self._timers)})"
