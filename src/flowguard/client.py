from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from types import TracebackType
from typing import TypeVar

import httpx
import structlog

from flowguard.circuit_breaker import LoggingBreakerListener
from flowguard.executor import RequestExecutor
from flowguard.logging import StructuredLogger, log_info, log_warning
from flowguard.metrics import DEFAULT_HEALTH_WINDOW, CallMetric, HealthStats
from flowguard.pool import PoolEndpointStats
from flowguard.recovery import OfflineCache, RecoveryManager
from flowguard.registry import ResilienceRegistry
from flowguard.retry import RetryConfig
from flowguard.settings import FlowguardSettings
from flowguard.transport import HttpxTransport, RequestDescriptor, TransportResponse

T = TypeVar("T")


@dataclass(frozen=True)
class ConnectivityReport:
    """Result of a live probe plus a snapshot of resilience state."""

    connected: bool
    latency: float
    circuit_breakers: dict[str, dict[str, object]] = field(default_factory=dict)
    pool: dict[str, PoolEndpointStats] = field(default_factory=dict)
    recent_calls: list[CallMetric] = field(default_factory=list)
    error: str | None = None


class ResilientApiClient:
    """Workflow-automation API client with retries, breakers and fallbacks."""

    def __init__(
        self,
        *,
        settings: FlowguardSettings,
        http_client: httpx.AsyncClient | None = None,
        registry: ResilienceRegistry | None = None,
        recovery: RecoveryManager | None = None,
        logger: StructuredLogger | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """Wire transport, registry, executor and recovery from ``settings``.

        Args:
            settings: Validated client settings.
            http_client: Shared async HTTP client. When omitted one is built
                from ``settings`` and closed by ``aclose``.
            registry: Shared resilience state. Built from ``settings`` when
                omitted.
            recovery: Recovery manager. Built from ``settings`` when omitted.
            logger: Structured logger shared by every component.
            sleep: Backoff sleep override, mainly for tests.
        """
        self.settings = settings
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )
        pool_config = settings.pool_config()
        self._owns_http_client = http_client is None
        if http_client is None:
            http_client = httpx.AsyncClient(
                base_url=settings.base_url,
                headers=settings.default_headers(),
                timeout=pool_config.connection_timeout,
                limits=httpx.Limits(keepalive_expiry=pool_config.idle_timeout),
            )
        self._http_client = http_client
        self.registry = (
            ResilienceRegistry(
                breaker_config=settings.circuit_breaker_config(),
                pool_config=pool_config,
                metrics_capacity=settings.metrics_capacity,
                breaker_listeners=[LoggingBreakerListener(self._logger)],
            )
            if registry is None
            else registry
        )
        self.executor = RequestExecutor(
            transport=HttpxTransport(
                client=http_client,
                default_timeout=pool_config.connection_timeout,
            ),
            registry=self.registry,
            retry_config=settings.retry_config(),
            logger=self._logger,
            sleep=sleep,
        )
        self.recovery = (
            RecoveryManager(
                cache=OfflineCache(settings.cache_default_ttl),
                metrics_capacity=settings.metrics_capacity,
                logger=self._logger,
            )
            if recovery is None
            else recovery
        )

    async def __aenter__(self) -> ResilientApiClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def execute(
        self,
        descriptor: RequestDescriptor,
        *,
        skip_circuit_breaker: bool = False,
        skip_retry: bool = False,
        retry_config: RetryConfig | None = None,
        stop_event: asyncio.Event | None = None,
        acquire_timeout: float | None = None,
    ) -> TransportResponse:
        """Execute one call through pool, breaker and retries."""
        return await self.executor.execute(
            descriptor,
            skip_circuit_breaker=skip_circuit_breaker,
            skip_retry=skip_retry,
            retry_config=retry_config,
            stop_event=stop_event,
            acquire_timeout=acquire_timeout,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, object] | None = None,
        body: object | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        endpoint: str | None = None,
        skip_circuit_breaker: bool = False,
        skip_retry: bool = False,
        retry_config: RetryConfig | None = None,
        stop_event: asyncio.Event | None = None,
        acquire_timeout: float | None = None,
    ) -> TransportResponse:
        """Build a ``RequestDescriptor`` for ``path`` and execute it.

        ``endpoint`` names the path template used as the partition key, for
        example ``/workflows/{id}``.
        """
        descriptor = RequestDescriptor(
            method=method,
            url=path,
            headers=dict(headers or {}),
            params=params,
            body=body,
            timeout=timeout,
            endpoint=endpoint,
        )
        return await self.execute(
            descriptor,
            skip_circuit_breaker=skip_circuit_breaker,
            skip_retry=skip_retry,
            retry_config=retry_config,
            stop_event=stop_event,
            acquire_timeout=acquire_timeout,
        )

    async def execute_with_fallback(
        self,
        operation: str,
        primary: Callable[[], Awaitable[T]],
        args: object = None,
        *,
        cache_result: bool = False,
        cache_ttl: float | None = None,
        skip_cache: bool = False,
    ) -> T:
        """Run ``primary`` through the recovery chain for ``operation``."""
        return await self.recovery.execute_with_fallback(
            operation,
            primary,
            args,
            cache_result=cache_result,
            cache_ttl=cache_ttl,
            skip_cache=skip_cache,
        )

    async def get_health_stats(
        self, window: int = DEFAULT_HEALTH_WINDOW
    ) -> HealthStats:
        return await self.registry.health_stats(window)

    async def check_connectivity(self) -> ConnectivityReport:
        """Probe the API and report breaker, pool and recent call state."""
        start = time.monotonic()
        error: str | None = None
        try:
            await self.request(
                "GET",
                self.settings.connectivity_probe_path,
                params={"limit": 1},
            )
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            log_warning(
                self._logger,
                "client.connectivity_failed",
                error_type=exc.__class__.__name__,
                error=error,
            )
        latency = time.monotonic() - start

        breakers: dict[str, dict[str, object]] = {}
        snapshots = await self.registry.breaker_storage.snapshots()
        for endpoint, snapshot in sorted(snapshots.items()):
            breakers[endpoint] = snapshot.as_dict()
        return ConnectivityReport(
            connected=error is None,
            latency=latency,
            circuit_breakers=breakers,
            pool=self.registry.pool.stats(),
            recent_calls=self.registry.metrics.recent(10),
            error=error,
        )

    async def reset_circuit_breakers(self) -> None:
        await self.registry.reset_circuit_breakers()
        log_info(self._logger, "client.circuit_breakers_reset")

    async def reset(self) -> None:
        """Clear breakers, pool counters, call metrics, cache and recovery log."""
        await self.registry.reset()
        self.recovery.reset()

    def set_retry_config(self, **overrides: object) -> RetryConfig:
        """Merge ``overrides`` into the default retry behavior."""
        self.executor.retry_config = self.executor.retry_config.merged(
            **overrides  # type: ignore[arg-type]
        )
        return self.executor.retry_config

    def set_circuit_breaker_config(self, **overrides: object) -> None:
        """Merge ``overrides`` into the breaker configuration of every endpoint."""
        self.registry.set_circuit_breaker_config(
            replace(self.registry.breaker_config, **overrides)  # type: ignore[arg-type]
        )
