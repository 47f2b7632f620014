"""Fallback strategy primitives and ready-made strategy factories."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from flowguard.recovery.cache import OfflineCache, cache_key

FallbackResult = object | Awaitable[object]
FallbackExecutor = Callable[["FallbackContext"], FallbackResult]


@dataclass(slots=True)
class FallbackContext:
    """What a fallback strategy knows about the failed operation.

    Attributes:
        operation: Logical operation name.
        args: Arguments the primary call was made with.
        last_error: Most recent failure, from the primary or a strategy.
        attempt_count: Fallback strategies attempted so far, this one included.
        max_attempts: Attempt budget requested by the caller.
        start_time: ``time.monotonic`` reading when recovery started.
    """

    operation: str
    args: object
    last_error: BaseException
    attempt_count: int
    max_attempts: int
    start_time: float


@dataclass(slots=True)
class FallbackStrategy:
    """Named alternative execution path; lower ``priority`` runs first.

    ``execute`` may be a plain function or a coroutine function.
    """

    name: str
    priority: int
    execute: FallbackExecutor
    enabled: bool = True


def cached_value_strategy(
    cache: OfflineCache,
    *,
    name: str = "offline-cache",
    priority: int = 1,
) -> FallbackStrategy:
    """Serve the still-live cached result for the same operation and args."""

    def _execute(context: FallbackContext) -> object:
        entry = cache.entry(cache_key(context.operation, context.args))
        if entry is None:
            raise LookupError(f"no cached result for {context.operation}")
        return entry.data

    return FallbackStrategy(name=name, priority=priority, execute=_execute)


def static_value_strategy(
    value: object = None,
    *,
    factory: Callable[[FallbackContext], object] | None = None,
    name: str = "static-default",
    priority: int = 100,
) -> FallbackStrategy:
    """Return a fixed degraded value, or one built from the context."""

    def _execute(context: FallbackContext) -> object:
        if factory is not None:
            return factory(context)
        return value

    return FallbackStrategy(name=name, priority=priority, execute=_execute)
