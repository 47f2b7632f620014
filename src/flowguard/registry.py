"""Explicit holder for every piece of per-endpoint resilience state."""

from __future__ import annotations

from collections.abc import Sequence

from flowguard.circuit_breaker import (
    AbstractBreakerStorage,
    BreakerListener,
    CircuitBreaker,
    CircuitBreakerConfig,
    InMemoryBreakerStorage,
)
from flowguard.metrics import (
    DEFAULT_HEALTH_WINDOW,
    DEFAULT_METRICS_CAPACITY,
    HealthStats,
    MetricsRecorder,
)
from flowguard.pool import ConnectionPool, ConnectionPoolConfig


class ResilienceRegistry:
    """Breakers, pool slots and call metrics shared by cooperating callers.

    Breakers are created lazily per endpoint key and live until
    ``reset_circuit_breakers`` or ``reset``. Pass one registry to every
    executor that should share state; build a fresh one to isolate.
    """

    def __init__(
        self,
        *,
        breaker_config: CircuitBreakerConfig | None = None,
        pool_config: ConnectionPoolConfig | None = None,
        metrics_capacity: int = DEFAULT_METRICS_CAPACITY,
        breaker_storage: AbstractBreakerStorage | None = None,
        breaker_listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        self.breaker_config = (
            CircuitBreakerConfig() if breaker_config is None else breaker_config
        )
        self.breaker_storage = (
            InMemoryBreakerStorage() if breaker_storage is None else breaker_storage
        )
        self.pool = ConnectionPool(pool_config)
        self.metrics = MetricsRecorder(metrics_capacity)
        self._breaker_listeners = tuple(breaker_listeners or ())
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker_for(self, endpoint: str) -> CircuitBreaker:
        """Return the breaker guarding ``endpoint``, creating it on first use."""
        breaker = self._breakers.get(endpoint)
        if breaker is None:
            breaker = CircuitBreaker(
                endpoint,
                config=self.breaker_config,
                storage=self.breaker_storage,
                listeners=self._breaker_listeners,
            )
            self._breakers[endpoint] = breaker
        return breaker

    def set_circuit_breaker_config(self, config: CircuitBreakerConfig) -> None:
        """Apply ``config`` to every endpoint breaker in place.

        Stored states and any in-flight half-open probe are kept.
        """
        self.breaker_config = config
        for breaker in self._breakers.values():
            breaker.config = config

    async def circuit_breaker_status(self) -> dict[str, str]:
        """Return the current state of every endpoint breaker."""
        status: dict[str, str] = {}
        for endpoint, breaker in sorted(self._breakers.items()):
            snapshot = await breaker.snapshot()
            status[endpoint] = str(snapshot.state)
        return status

    async def health_stats(self, window: int = DEFAULT_HEALTH_WINDOW) -> HealthStats:
        return self.metrics.health_stats(
            circuit_breaker_status=await self.circuit_breaker_status(),
            pool_utilization=self.pool.utilization(),
            window=window,
        )

    async def reset_circuit_breakers(self) -> None:
        """Drop every breaker; endpoints start ``CLOSED`` on their next call."""
        self._breakers.clear()
        await self.breaker_storage.clear()

    async def reset(self) -> None:
        """Clear breakers, idle pool counters and the call log."""
        await self.reset_circuit_breakers()
        self.pool.reset()
        self.metrics.clear()
