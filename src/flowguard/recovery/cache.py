"""TTL cache of last-known-good operation results."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass

DEFAULT_CACHE_TTL = 5 * 60.0


def _monotonic() -> float:
    return time.monotonic()


def cache_key(operation: str, args: object) -> str:
    """Build the cache key ``"<operation>:<serialized args>"``.

    Mappings are serialized with sorted keys so equal arguments always share
    a key; values JSON cannot encode fall back to ``str``. Arguments JSON
    cannot serialize at all, such as mappings with unorderable or tuple keys,
    fall back to ``repr``.
    """
    if isinstance(args, str):
        return f"{operation}:{args}"
    try:
        serialized = json.dumps(
            args, sort_keys=True, default=str, separators=(",", ":")
        )
    except TypeError:
        serialized = repr(args)
    return f"{operation}:{serialized}"


@dataclass(frozen=True)
class CacheEntry:
    """One cached result with its creation time and lifetime in seconds."""

    key: str
    data: object
    created_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


@dataclass(frozen=True)
class CacheStats:
    size: int
    keys: tuple[str, ...]


class OfflineCache:
    """Map of cache entries evicted lazily once their TTL has passed."""

    def __init__(self, default_ttl: float = DEFAULT_CACHE_TTL) -> None:
        if default_ttl < 0:
            raise ValueError("default_ttl must be >= 0")
        self.default_ttl = default_ttl
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def set(self, key: str, data: object, ttl: float | None = None) -> CacheEntry:
        resolved_ttl = self.default_ttl if ttl is None else ttl
        if resolved_ttl < 0:
            raise ValueError("ttl must be >= 0")
        entry = CacheEntry(
            key=key, data=data, created_at=_monotonic(), ttl=resolved_ttl
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def entry(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key``, evicting it when expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(_monotonic()):
                del self._entries[key]
                return None
            return entry

    def get(self, key: str) -> object | None:
        entry = self.entry(key)
        return None if entry is None else entry.data

    def has(self, key: str) -> bool:
        return self.entry(key) is not None

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        """Report stored entries; expired ones linger until read."""
        with self._lock:
            return CacheStats(size=len(self._entries), keys=tuple(self._entries))
