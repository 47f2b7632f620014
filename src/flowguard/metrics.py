"""Bounded call logs and derived health aggregates."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Generic, TypeVar

DEFAULT_METRICS_CAPACITY = 1000
DEFAULT_HEALTH_WINDOW = 100

T = TypeVar("T")


class BoundedLog(Generic[T]):
    """Thread-safe ring buffer that evicts the oldest entry on overflow."""

    def __init__(self, capacity: int = DEFAULT_METRICS_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: deque[T] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, entry: T) -> None:
        with self._lock:
            self._entries.append(entry)

    def recent(self, limit: int | None = None) -> list[T]:
        """Return up to ``limit`` most recent entries, oldest first."""
        with self._lock:
            entries = list(self._entries)
        if limit is None:
            return entries
        if limit <= 0:
            return []
        return entries[-limit:]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[T]:
        return iter(self.recent())


@dataclass(slots=True)
class CallMetric:
    """Outcome of one ``RequestExecutor.execute`` call.

    Times are ``time.monotonic`` readings in seconds.
    """

    endpoint: str
    method: str
    start_time: float
    end_time: float | None = None
    status_code: int | None = None
    success: bool = False
    retry_count: int = 0
    error: str | None = None

    @property
    def duration(self) -> float:
        end_time = self.start_time if self.end_time is None else self.end_time
        return max(end_time - self.start_time, 0.0)


@dataclass(frozen=True)
class EndpointSummary:
    """Aggregates for one endpoint over the retained call log."""

    count: int
    success_rate: float
    average_latency: float


@dataclass(frozen=True)
class HealthStats:
    """Health view derived from recent calls, breakers and the pool.

    Attributes:
        total_requests: Calls considered, at most the health window.
        success_rate: Percentage of successful calls in the window.
        average_latency: Mean call duration in seconds over the window.
        circuit_breaker_status: Breaker state per endpoint key.
        pool_utilization: Mean slot usage across endpoints, as a percentage.
    """

    total_requests: int
    success_rate: float
    average_latency: float
    circuit_breaker_status: dict[str, str] = field(default_factory=dict)
    pool_utilization: float = 0.0


def _percentage(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole else 0.0


class MetricsRecorder:
    """Append-only bounded log of ``CallMetric`` records."""

    def __init__(self, capacity: int = DEFAULT_METRICS_CAPACITY) -> None:
        self._log: BoundedLog[CallMetric] = BoundedLog(capacity)

    @property
    def capacity(self) -> int:
        return self._log.capacity

    def record(self, metric: CallMetric) -> None:
        self._log.append(metric)

    def recent(self, limit: int | None = None) -> list[CallMetric]:
        return self._log.recent(limit)

    def success_rate(self, window: int = DEFAULT_HEALTH_WINDOW) -> float:
        """Return the success percentage over the last ``window`` calls."""
        metrics = self.recent(window)
        successes = sum(1 for metric in metrics if metric.success)
        return _percentage(successes, len(metrics))

    def average_latency(self, window: int = DEFAULT_HEALTH_WINDOW) -> float:
        """Return mean duration in seconds over the last ``window`` calls."""
        metrics = self.recent(window)
        if not metrics:
            return 0.0
        return sum(metric.duration for metric in metrics) / len(metrics)

    def endpoint_summary(self) -> dict[str, EndpointSummary]:
        """Group the retained log by endpoint key."""
        grouped: dict[str, list[CallMetric]] = {}
        for metric in self.recent():
            grouped.setdefault(metric.endpoint, []).append(metric)
        return {
            endpoint: EndpointSummary(
                count=len(metrics),
                success_rate=_percentage(
                    sum(1 for metric in metrics if metric.success), len(metrics)
                ),
                average_latency=sum(metric.duration for metric in metrics)
                / len(metrics),
            )
            for endpoint, metrics in grouped.items()
        }

    def health_stats(
        self,
        *,
        circuit_breaker_status: dict[str, str],
        pool_utilization: float,
        window: int = DEFAULT_HEALTH_WINDOW,
    ) -> HealthStats:
        """Combine call aggregates with breaker and pool observations.

        ``pool_utilization`` is the pool ratio in ``[0, 1]``.
        """
        return HealthStats(
            total_requests=len(self.recent(window)),
            success_rate=self.success_rate(window),
            average_latency=self.average_latency(window),
            circuit_breaker_status=dict(circuit_breaker_status),
            pool_utilization=pool_utilization * 100,
        )

    def clear(self) -> None:
        self._log.clear()
