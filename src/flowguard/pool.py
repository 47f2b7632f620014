"""Per-endpoint bounded concurrency with FIFO slot hand-off.

A released slot is transferred directly to the oldest live waiter while the
pool lock is held, so the active count never dips below the number of running
callers and late arrivals cannot overtake queued ones. A waiter queued from
another thread is resolved on its own event loop.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field

from flowguard.errors import PoolTimeoutError, RequestCancelledError


@dataclass(frozen=True)
class ConnectionPoolConfig:
    """Connection pool settings.

    Attributes:
        max_connections: Concurrent in-flight calls allowed per endpoint.
        connection_timeout: Default per-call transport timeout in seconds.
        idle_timeout: Keep-alive expiry in seconds for pooled HTTP connections.
        acquire_timeout: Default seconds to wait for a slot; ``None`` waits
            indefinitely.
    """

    max_connections: int = 10
    connection_timeout: float = 30.0
    idle_timeout: float = 60.0
    acquire_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        if self.connection_timeout <= 0:
            raise ValueError("connection_timeout must be > 0")
        if self.idle_timeout < 0:
            raise ValueError("idle_timeout must be >= 0")
        if self.acquire_timeout is not None and self.acquire_timeout < 0:
            raise ValueError("acquire_timeout must be >= 0 when provided")


@dataclass(frozen=True)
class PoolLease:
    """Token proving ownership of one endpoint slot."""

    endpoint: str
    lease_id: str


@dataclass(frozen=True)
class PoolEndpointStats:
    """Point-in-time slot usage for one endpoint."""

    active: int
    waiting: int


@dataclass(slots=True)
class _EndpointSlots:
    active: int = 0
    waiters: deque[asyncio.Future[PoolLease]] = field(default_factory=deque)
    leases: set[str] = field(default_factory=set)


class ConnectionPool:
    """Bound concurrent calls per endpoint key."""

    def __init__(self, config: ConnectionPoolConfig | None = None) -> None:
        self.config = ConnectionPoolConfig() if config is None else config
        self._lock = threading.Lock()
        self._slots: dict[str, _EndpointSlots] = {}

    def _slots_for(self, endpoint: str) -> _EndpointSlots:
        slots = self._slots.get(endpoint)
        if slots is None:
            slots = _EndpointSlots()
            self._slots[endpoint] = slots
        return slots

    @staticmethod
    def _issue(slots: _EndpointSlots, endpoint: str) -> PoolLease:
        lease = PoolLease(endpoint=endpoint, lease_id=uuid.uuid4().hex)
        slots.leases.add(lease.lease_id)
        return lease

    async def acquire(
        self,
        endpoint: str,
        *,
        timeout: float | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> PoolLease:
        """Take a slot for ``endpoint``, waiting in FIFO order when saturated.

        Args:
            endpoint: Endpoint key to acquire a slot for.
            timeout: Seconds to wait before failing. Defaults to the configured
                ``acquire_timeout``.
            stop_event: Optional cancellation signal; when set the caller
                leaves the queue immediately.

        Raises:
            PoolTimeoutError: When no slot was handed over within ``timeout``.
            RequestCancelledError: When ``stop_event`` is set while waiting.
        """
        if stop_event is not None and stop_event.is_set():
            raise RequestCancelledError(f"Cancelled before acquiring {endpoint}.")

        loop = asyncio.get_running_loop()
        with self._lock:
            slots = self._slots_for(endpoint)
            if slots.active < self.config.max_connections:
                slots.active += 1
                return self._issue(slots, endpoint)
            waiter: asyncio.Future[PoolLease] = loop.create_future()
            slots.waiters.append(waiter)

        resolved_timeout = self.config.acquire_timeout if timeout is None else timeout
        try:
            return await self._wait(
                waiter,
                endpoint=endpoint,
                timeout=resolved_timeout,
                stop_event=stop_event,
            )
        except BaseException:
            self._abandon(endpoint, waiter)
            raise

    async def _wait(
        self,
        waiter: asyncio.Future[PoolLease],
        *,
        endpoint: str,
        timeout: float | None,
        stop_event: asyncio.Event | None,
    ) -> PoolLease:
        stop_task: asyncio.Task[bool] | None = None
        pending: set[asyncio.Future[object]] = {waiter}  # type: ignore[arg-type]
        if stop_event is not None:
            stop_task = asyncio.create_task(stop_event.wait())
            pending.add(stop_task)  # type: ignore[arg-type]
        try:
            await asyncio.wait(
                pending,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if stop_task is not None:
                stop_task.cancel()
                with suppress(asyncio.CancelledError):
                    await stop_task

        if waiter.done() and not waiter.cancelled():
            return waiter.result()
        if stop_event is not None and stop_event.is_set():
            raise RequestCancelledError(f"Cancelled while waiting for {endpoint}.")
        raise PoolTimeoutError(endpoint, timeout if timeout is not None else 0.0)

    def _abandon(self, endpoint: str, waiter: asyncio.Future[PoolLease]) -> None:
        with self._lock:
            slots = self._slots_for(endpoint)
            if waiter.done() and not waiter.cancelled():
                self._release_locked(slots, waiter.result())
                return
            waiter.cancel()
            with suppress(ValueError):
                slots.waiters.remove(waiter)

    def release(self, lease: PoolLease) -> None:
        """Return ``lease`` to the pool, handing it to the oldest live waiter.

        Raises:
            ValueError: When the lease is unknown or was already released.
        """
        with self._lock:
            slots = self._slots.get(lease.endpoint)
            if slots is None or lease.lease_id not in slots.leases:
                raise ValueError(
                    f"unknown or already released lease for {lease.endpoint}"
                )
            self._release_locked(slots, lease)

    def _release_locked(self, slots: _EndpointSlots, lease: PoolLease) -> None:
        slots.leases.discard(lease.lease_id)
        while slots.waiters:
            waiter = slots.waiters.popleft()
            if waiter.done():
                continue
            handed = self._issue(slots, lease.endpoint)
            if self._hand_off(waiter, handed):
                return
            slots.leases.discard(handed.lease_id)
        slots.active = max(slots.active - 1, 0)

    def _hand_off(self, waiter: asyncio.Future[PoolLease], lease: PoolLease) -> bool:
        """Resolve ``waiter`` on its own event loop.

        Returns ``False`` when the waiter's loop is closed and can never
        receive the slot.
        """
        loop = waiter.get_loop()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            waiter.set_result(lease)
            return True
        try:
            loop.call_soon_threadsafe(self._deliver, waiter, lease)
        except RuntimeError:
            return False
        return True

    def _deliver(self, waiter: asyncio.Future[PoolLease], lease: PoolLease) -> None:
        # The waiter may have timed out or been cancelled before this ran.
        if waiter.done():
            self.release(lease)
            return
        waiter.set_result(lease)

    @asynccontextmanager
    async def lease(
        self,
        endpoint: str,
        *,
        timeout: float | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> AsyncIterator[PoolLease]:
        """Hold one ``endpoint`` slot for the duration of the block."""
        acquired = await self.acquire(endpoint, timeout=timeout, stop_event=stop_event)
        try:
            yield acquired
        finally:
            self.release(acquired)

    def active_count(self, endpoint: str) -> int:
        with self._lock:
            slots = self._slots.get(endpoint)
            return 0 if slots is None else slots.active

    def waiting_count(self, endpoint: str) -> int:
        with self._lock:
            slots = self._slots.get(endpoint)
            if slots is None:
                return 0
            return sum(1 for waiter in slots.waiters if not waiter.done())

    def stats(self) -> dict[str, PoolEndpointStats]:
        """Return active and waiting counts for every known endpoint."""
        with self._lock:
            return {
                endpoint: PoolEndpointStats(
                    active=slots.active,
                    waiting=sum(1 for waiter in slots.waiters if not waiter.done()),
                )
                for endpoint, slots in self._slots.items()
            }

    def utilization(self) -> float:
        """Return mean ``active / max_connections`` across known endpoints."""
        with self._lock:
            if not self._slots:
                return 0.0
            total = sum(slots.active for slots in self._slots.values())
            return total / (len(self._slots) * self.config.max_connections)

    def reset(self) -> None:
        """Forget idle endpoints; endpoints with live leases are kept intact."""
        with self._lock:
            idle = [
                endpoint
                for endpoint, slots in self._slots.items()
                if slots.active == 0 and not slots.waiters
            ]
            for endpoint in idle:
                del self._slots[endpoint]
