from __future__ import annotations

import asyncio

import pytest

from flowguard.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from flowguard.metrics import CallMetric
from flowguard.pool import ConnectionPoolConfig
from flowguard.registry import ResilienceRegistry

pytestmark = pytest.mark.asyncio


async def _fail() -> None:
    raise RuntimeError("down")


async def test_breaker_for_reuses_endpoint_breaker() -> None:
    registry = ResilienceRegistry()

    first = registry.breaker_for("GET /workflows")

    assert registry.breaker_for("GET /workflows") is first
    assert registry.breaker_for("POST /workflows") is not first


async def test_set_circuit_breaker_config_keeps_stored_state() -> None:
    registry = ResilienceRegistry(
        breaker_config=CircuitBreakerConfig(failure_threshold=3)
    )
    with pytest.raises(RuntimeError):
        await registry.breaker_for("GET /workflows").call(_fail)

    registry.set_circuit_breaker_config(CircuitBreakerConfig(failure_threshold=2))
    breaker = registry.breaker_for("GET /workflows")
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    assert breaker.config.failure_threshold == 2
    assert (await breaker.snapshot()).state == CircuitState.OPEN


async def test_set_circuit_breaker_config_keeps_half_open_call_exclusive() -> None:
    config = CircuitBreakerConfig(failure_threshold=1, reset_timeout=0.0)
    registry = ResilienceRegistry(breaker_config=config)
    breaker = registry.breaker_for("GET /workflows")
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    started = asyncio.Event()
    release = asyncio.Event()

    async def _probe() -> str:
        started.set()
        await release.wait()
        return "ok"

    probe = asyncio.create_task(breaker.call(_probe))
    await started.wait()

    registry.set_circuit_breaker_config(
        CircuitBreakerConfig(failure_threshold=2, reset_timeout=0.0)
    )

    assert registry.breaker_for("GET /workflows") is breaker
    with pytest.raises(CircuitOpenError):
        await registry.breaker_for("GET /workflows").call(_probe)

    release.set()
    assert await probe == "ok"
    assert breaker.config.failure_threshold == 2


async def test_health_stats_combines_metrics_breakers_and_pool() -> None:
    registry = ResilienceRegistry(pool_config=ConnectionPoolConfig(max_connections=2))
    registry.breaker_for("GET /workflows")
    await registry.pool.acquire("GET /workflows")
    registry.metrics.record(
        CallMetric(
            endpoint="GET /workflows",
            method="GET",
            start_time=1.0,
            end_time=1.5,
            status_code=200,
            success=True,
        )
    )

    stats = await registry.health_stats()

    assert stats.total_requests == 1
    assert stats.success_rate == pytest.approx(100.0)
    assert stats.average_latency == pytest.approx(0.5)
    assert stats.circuit_breaker_status == {"GET /workflows": "closed"}
    assert stats.pool_utilization == pytest.approx(50.0)


async def test_reset_clears_breakers_and_metrics() -> None:
    registry = ResilienceRegistry(
        breaker_config=CircuitBreakerConfig(failure_threshold=1)
    )
    with pytest.raises(RuntimeError):
        await registry.breaker_for("GET /workflows").call(_fail)
    registry.metrics.record(
        CallMetric(endpoint="GET /workflows", method="GET", start_time=0.0)
    )

    await registry.reset()

    assert await registry.circuit_breaker_status() == {}
    assert await registry.breaker_storage.snapshots() == {}
    assert registry.metrics.recent() == []
    snapshot = await registry.breaker_for("GET /workflows").snapshot()
    assert snapshot.state == CircuitState.CLOSED
