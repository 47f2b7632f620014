"""Fallback chains and an offline cache for degraded operation.

A ``RecoveryManager`` first serves live cache entries, then runs the primary
operation, then tries each enabled ``FallbackStrategy`` for the operation in
ascending priority order. Results report whether they are degraded through
``RecoveryOutcome``.
"""

from flowguard.recovery.cache import (
    DEFAULT_CACHE_TTL,
    CacheEntry,
    CacheStats,
    OfflineCache,
    cache_key,
)
from flowguard.recovery.manager import (
    OperationStats,
    PreloadEntry,
    RecoveryManager,
    RecoveryMetric,
    RecoveryOutcome,
    RecoveryStats,
    with_recovery,
)
from flowguard.recovery.strategies import (
    FallbackContext,
    FallbackStrategy,
    cached_value_strategy,
    static_value_strategy,
)

__all__ = [
    "DEFAULT_CACHE_TTL",
    "CacheEntry",
    "CacheStats",
    "FallbackContext",
    "FallbackStrategy",
    "OfflineCache",
    "OperationStats",
    "PreloadEntry",
    "RecoveryManager",
    "RecoveryMetric",
    "RecoveryOutcome",
    "RecoveryStats",
    "cache_key",
    "cached_value_strategy",
    "static_value_strategy",
    "with_recovery",
]
