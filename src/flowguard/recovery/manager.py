"""Fallback chain and offline cache around a primary async operation."""

from __future__ import annotations

import functools
import inspect
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, ParamSpec, TypeVar, cast

import structlog

from flowguard.errors import RecoveryExhaustedError, RequestCancelledError
from flowguard.logging import StructuredLogger, log_info, log_warning
from flowguard.metrics import DEFAULT_METRICS_CAPACITY, BoundedLog
from flowguard.recovery.cache import (
    DEFAULT_CACHE_TTL,
    CacheStats,
    OfflineCache,
    cache_key,
)
from flowguard.recovery.strategies import FallbackContext, FallbackStrategy

T = TypeVar("T")
P = ParamSpec("P")

DEFAULT_MAX_ATTEMPTS = 3
PRELOAD_CACHE_TTL = 15 * 60.0


def _monotonic() -> float:
    return time.monotonic()


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RecoveryMetric:
    """How one ``execute_with_fallback`` call was resolved.

    Attributes:
        operation: Logical operation name.
        recovery_time: Seconds spent resolving the call.
        success: Whether a result was returned.
        timestamp: Wall-clock completion time.
        fallback_used: Name of the winning strategy, if any.
        error: Last error message when every path failed.
        from_cache: Whether the result came from the offline cache.
    """

    operation: str
    recovery_time: float
    success: bool
    timestamp: datetime
    fallback_used: str | None = None
    error: str | None = None
    from_cache: bool = False


@dataclass(frozen=True)
class RecoveryOutcome(Generic[T]):
    """A result together with where it came from."""

    result: T
    metric: RecoveryMetric

    @property
    def fallback_used(self) -> str | None:
        return self.metric.fallback_used

    @property
    def from_cache(self) -> bool:
        return self.metric.from_cache

    @property
    def degraded(self) -> bool:
        """True when the result did not come from the primary call."""
        return self.metric.fallback_used is not None or self.metric.from_cache


@dataclass(frozen=True)
class OperationStats:
    count: int
    success_rate: float
    average_recovery_time: float


@dataclass(frozen=True)
class RecoveryStats:
    """Aggregates over the retained recovery log; rates are percentages."""

    total_operations: int
    success_rate: float
    fallback_usage_rate: float
    average_recovery_time: float
    operation_stats: dict[str, OperationStats] = field(default_factory=dict)
    cache_stats: CacheStats = field(default_factory=lambda: CacheStats(0, ()))


@dataclass(frozen=True)
class PreloadEntry:
    """One operation to run ahead of time to warm the offline cache."""

    operation: str
    executor: Callable[[], Awaitable[object]]
    args: object = None
    ttl: float | None = None


def _percentage(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole else 0.0


class RecoveryManager:
    """Execute operations with an offline cache and prioritized fallbacks."""

    def __init__(
        self,
        *,
        cache: OfflineCache | None = None,
        metrics_capacity: int = DEFAULT_METRICS_CAPACITY,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.cache = OfflineCache(DEFAULT_CACHE_TTL) if cache is None else cache
        self.metrics: BoundedLog[RecoveryMetric] = BoundedLog(metrics_capacity)
        self._strategies: dict[str, list[FallbackStrategy]] = {}
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    def add_fallback_strategy(self, operation: str, strategy: FallbackStrategy) -> None:
        """Register ``strategy`` for ``operation``, keeping priority order.

        Raises:
            ValueError: When a strategy with the same name is registered.
        """
        strategies = self._strategies.setdefault(operation, [])
        if any(existing.name == strategy.name for existing in strategies):
            raise ValueError(
                f"fallback strategy {strategy.name!r} already registered for "
                f"{operation!r}"
            )
        strategies.append(strategy)
        strategies.sort(key=lambda item: item.priority)

    def remove_fallback_strategy(self, operation: str, name: str) -> bool:
        strategies = self._strategies.get(operation, [])
        for index, strategy in enumerate(strategies):
            if strategy.name == name:
                del strategies[index]
                return True
        return False

    def toggle_fallback_strategy(
        self, operation: str, name: str, enabled: bool
    ) -> bool:
        """Enable or disable one strategy; returns whether it was found."""
        for strategy in self._strategies.get(operation, []):
            if strategy.name == name:
                strategy.enabled = enabled
                log_info(
                    self._logger,
                    "recovery.strategy_toggled",
                    operation=operation,
                    strategy=name,
                    enabled=enabled,
                )
                return True
        return False

    def fallback_strategies(self, operation: str) -> list[FallbackStrategy]:
        return list(self._strategies.get(operation, []))

    async def execute_with_fallback(
        self,
        operation: str,
        primary: Callable[[], Awaitable[T]],
        args: object = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        cache_result: bool = False,
        cache_ttl: float | None = None,
        skip_cache: bool = False,
    ) -> T:
        """Return the result of ``primary`` or of the first working fallback."""
        outcome = await self.execute_with_fallback_outcome(
            operation,
            primary,
            args,
            max_attempts=max_attempts,
            cache_result=cache_result,
            cache_ttl=cache_ttl,
            skip_cache=skip_cache,
        )
        return outcome.result

    async def execute_with_fallback_outcome(
        self,
        operation: str,
        primary: Callable[[], Awaitable[T]],
        args: object = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        cache_result: bool = False,
        cache_ttl: float | None = None,
        skip_cache: bool = False,
    ) -> RecoveryOutcome[T]:
        """Resolve ``operation`` through cache, primary call and fallbacks.

        Args:
            operation: Logical operation name selecting the fallback chain.
            primary: Zero-argument coroutine function performing the real call.
            args: Arguments identifying the call, used for the cache key.
            max_attempts: Attempt budget exposed to strategies.
            cache_result: Store a successful result in the offline cache.
            cache_ttl: Lifetime in seconds of the stored result.
            skip_cache: Ignore any cached result for this call.

        Returns:
            The result and the ``RecoveryMetric`` describing its source.

        Raises:
            RecoveryExhaustedError: When the primary and every enabled
                strategy failed.
            RequestCancelledError: When the primary call was cancelled; no
                fallback runs.
        """
        start = _monotonic()
        key = cache_key(operation, args)

        if not skip_cache:
            entry = self.cache.entry(key)
            if entry is not None:
                log_info(self._logger, "recovery.cache_hit", operation=operation)
                metric = self._record(operation, start, success=True, from_cache=True)
                return RecoveryOutcome(result=cast(T, entry.data), metric=metric)

        context = FallbackContext(
            operation=operation,
            args=args,
            last_error=RuntimeError("No error"),
            attempt_count=0,
            max_attempts=max_attempts,
            start_time=start,
        )

        try:
            result = await primary()
        except RequestCancelledError:
            raise
        except Exception as exc:
            context.last_error = exc
            log_warning(
                self._logger,
                "recovery.primary_failed",
                operation=operation,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
        else:
            if cache_result:
                self.cache.set(key, result, cache_ttl)
            metric = self._record(operation, start, success=True)
            return RecoveryOutcome(result=result, metric=metric)

        for strategy in self.fallback_strategies(operation):
            if not strategy.enabled:
                continue
            context.attempt_count += 1
            log_info(
                self._logger,
                "recovery.fallback_attempt",
                operation=operation,
                strategy=strategy.name,
                attempt=context.attempt_count,
            )
            try:
                fallback_result = strategy.execute(context)
                if inspect.isawaitable(fallback_result):
                    fallback_result = await fallback_result
            except Exception as exc:
                context.last_error = exc
                log_warning(
                    self._logger,
                    "recovery.fallback_failed",
                    operation=operation,
                    strategy=strategy.name,
                    error_type=exc.__class__.__name__,
                    error=str(exc),
                )
                continue

            if cache_result:
                self.cache.set(key, fallback_result, cache_ttl)
            metric = self._record(
                operation, start, success=True, fallback_used=strategy.name
            )
            return RecoveryOutcome(result=cast(T, fallback_result), metric=metric)

        last_error = str(context.last_error) or context.last_error.__class__.__name__
        self._record(operation, start, success=False, error=last_error)
        raise RecoveryExhaustedError(
            operation,
            last_error=last_error,
            attempt_count=context.attempt_count,
        ) from context.last_error

    def _record(
        self,
        operation: str,
        start: float,
        *,
        success: bool,
        fallback_used: str | None = None,
        error: str | None = None,
        from_cache: bool = False,
    ) -> RecoveryMetric:
        metric = RecoveryMetric(
            operation=operation,
            recovery_time=max(_monotonic() - start, 0.0),
            success=success,
            timestamp=_utcnow(),
            fallback_used=fallback_used,
            error=error,
            from_cache=from_cache,
        )
        self.metrics.append(metric)
        return metric

    async def preload_cache(self, entries: Iterable[PreloadEntry]) -> int:
        """Run each entry's executor and cache its result.

        Failures are logged and skipped. Returns the number of entries cached.
        """
        loaded = 0
        for item in entries:
            try:
                result = await item.executor()
            except Exception as exc:
                log_warning(
                    self._logger,
                    "recovery.preload_failed",
                    operation=item.operation,
                    error_type=exc.__class__.__name__,
                    error=str(exc),
                )
                continue
            ttl = PRELOAD_CACHE_TTL if item.ttl is None else item.ttl
            self.cache.set(cache_key(item.operation, item.args), result, ttl)
            loaded += 1
            log_info(self._logger, "recovery.preloaded", operation=item.operation)
        return loaded

    def recovery_stats(self) -> RecoveryStats:
        metrics = self.metrics.recent()
        total = len(metrics)
        grouped: dict[str, list[RecoveryMetric]] = {}
        for metric in metrics:
            grouped.setdefault(metric.operation, []).append(metric)

        operation_stats = {
            operation: OperationStats(
                count=len(items),
                success_rate=_percentage(
                    sum(1 for item in items if item.success), len(items)
                ),
                average_recovery_time=sum(item.recovery_time for item in items)
                / len(items),
            )
            for operation, items in grouped.items()
        }
        return RecoveryStats(
            total_operations=total,
            success_rate=_percentage(sum(1 for m in metrics if m.success), total),
            fallback_usage_rate=_percentage(
                sum(1 for m in metrics if m.fallback_used is not None), total
            ),
            average_recovery_time=(
                sum(m.recovery_time for m in metrics) / total if total else 0.0
            ),
            operation_stats=operation_stats,
            cache_stats=self.cache.stats(),
        )

    def reset(self) -> None:
        """Clear the offline cache and the recovery log."""
        self.cache.clear()
        self.metrics.clear()
        log_info(self._logger, "recovery.reset")


def with_recovery(
    manager: RecoveryManager,
    operation: str,
    *,
    cache_result: bool = False,
    cache_ttl: float | None = None,
    skip_cache: bool = False,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorate a coroutine function so calls go through ``manager``.

    The call arguments become the cache key arguments.
    """

    def _decorate(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def _wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            call_args: dict[str, Any] = {"args": list(args), "kwargs": dict(kwargs)}
            return await manager.execute_with_fallback(
                operation,
                lambda: func(*args, **kwargs),
                call_args,
                cache_result=cache_result,
                cache_ttl=cache_ttl,
                skip_cache=skip_cache,
            )

        return _wrapper

    return _decorate
