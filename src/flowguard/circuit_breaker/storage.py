"""State storage for endpoint circuit breakers.

Storage is decoupled from breaker logic so one store can back every endpoint
breaker held by a ``ResilienceRegistry``.

Important: storage persists only ``CLOSED`` and ``OPEN``. ``HALF_OPEN`` is an
ephemeral, per-instance probe mode and should not be persisted by backends.
"""

import asyncio
import sys
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from flowguard.circuit_breaker.state import BreakerSnapshot, CircuitState


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AbstractBreakerStorage(ABC):
    """Abstract breaker storage interface."""

    @abstractmethod
    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current breaker snapshot for ``name``."""

    @abstractmethod
    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call and return the updated snapshot."""

    @abstractmethod
    async def record_failure(
        self, name: str, *, window: float | None = None
    ) -> BreakerSnapshot:
        """Record a failed call and return the updated snapshot.

        When ``window`` is given and the previous failure is older than
        ``window`` seconds, the count restarts at one.
        """

    @abstractmethod
    async def force_open(self, name: str, *, reset_timeout: float) -> BreakerSnapshot:
        """Force breaker ``name`` into ``OPEN`` for ``reset_timeout`` seconds."""

    @abstractmethod
    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker ``name`` to a healthy ``CLOSED`` state."""

    @abstractmethod
    async def snapshots(self) -> dict[str, BreakerSnapshot]:
        """Return every known breaker snapshot keyed by name."""

    @abstractmethod
    async def clear(self) -> None:
        """Forget every breaker."""


class InMemoryBreakerStorage(AbstractBreakerStorage):
    """In-memory storage with per-breaker cooperative + optional thread locks."""

    def __init__(self) -> None:
        """Initialize in-memory snapshot and lock registries."""
        self._snapshots: dict[str, BreakerSnapshot] = {}
        self._async_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._thread_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())

    def _default_snapshot(self, name: str) -> BreakerSnapshot:
        return BreakerSnapshot(
            name=name,
            state=CircuitState.CLOSED,
            failure_count=0,
            last_failure_at=None,
            opened_at=None,
        )

    @asynccontextmanager
    async def _locked(self, name: str) -> AsyncIterator[None]:
        async_lock = self._async_locks[name]
        if self._gil_enabled:
            await async_lock.acquire()
            try:
                yield
            finally:
                async_lock.release()
            return

        thread_lock = self._thread_locks[name]
        thread_lock.acquire()
        try:
            await async_lock.acquire()
        except Exception:
            thread_lock.release()
            raise
        try:
            yield
        finally:
            async_lock.release()
            thread_lock.release()

    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current snapshot, creating a default one if missing."""
        async with self._locked(name):
            snapshot = self._snapshots.get(name)
            if snapshot is None:
                snapshot = self._default_snapshot(name)
                self._snapshots[name] = snapshot
            return snapshot

    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call.

        A snapshot that is already healthy is left untouched to keep the hot
        path free of writes.
        """
        async with self._locked(name):
            snapshot = self._snapshots.get(name, self._default_snapshot(name))
            if snapshot.state == CircuitState.CLOSED and snapshot.failure_count == 0:
                self._snapshots[name] = snapshot
                return snapshot
            updated = self._default_snapshot(name)
            self._snapshots[name] = updated
            return updated

    async def record_failure(
        self, name: str, *, window: float | None = None
    ) -> BreakerSnapshot:
        """Increment failure counters and return the updated snapshot."""
        async with self._locked(name):
            snapshot = self._snapshots.get(name, self._default_snapshot(name))
            now = _utcnow()
            failure_count = snapshot.failure_count + 1
            if (
                window is not None
                and snapshot.last_failure_at is not None
                and snapshot.state == CircuitState.CLOSED
                and now - snapshot.last_failure_at > timedelta(seconds=window)
            ):
                failure_count = 1
            updated = BreakerSnapshot(
                name=name,
                state=snapshot.state,
                failure_count=failure_count,
                last_failure_at=now,
                opened_at=snapshot.opened_at,
                next_attempt_at=snapshot.next_attempt_at,
            )
            self._snapshots[name] = updated
            return updated

    async def force_open(self, name: str, *, reset_timeout: float) -> BreakerSnapshot:
        """Force the circuit open and restart the reset timeout window."""
        async with self._locked(name):
            snapshot = self._snapshots.get(name, self._default_snapshot(name))
            now = _utcnow()
            updated = BreakerSnapshot(
                name=name,
                state=CircuitState.OPEN,
                failure_count=snapshot.failure_count,
                last_failure_at=snapshot.last_failure_at,
                opened_at=now,
                next_attempt_at=now + timedelta(seconds=reset_timeout),
            )
            self._snapshots[name] = updated
            return updated

    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker state and counters to a healthy default snapshot."""
        async with self._locked(name):
            updated = self._default_snapshot(name)
            self._snapshots[name] = updated
            return updated

    async def snapshots(self) -> dict[str, BreakerSnapshot]:
        """Return a copy of every stored snapshot."""
        return dict(self._snapshots)

    async def clear(self) -> None:
        """Drop every snapshot; breakers start ``CLOSED`` on next use."""
        self._snapshots.clear()
