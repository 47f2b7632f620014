import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import pytest

import flowguard.circuit_breaker.breaker as breaker_mod
import flowguard.circuit_breaker.storage as storage_mod
from flowguard.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    InMemoryBreakerStorage,
    LoggingBreakerListener,
)
from flowguard.errors import RequestCancelledError
from tests.flowguard.support.fakes import FakeLogger

pytestmark = pytest.mark.asyncio


class _FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self._now = datetime(2020, 1, 1, tzinfo=UTC) if start is None else start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now = self._now + timedelta(seconds=seconds)


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> _FakeClock:
    fake = _FakeClock()
    monkeypatch.setattr(breaker_mod, "_utcnow", fake.now)
    monkeypatch.setattr(storage_mod, "_utcnow", fake.now)
    return fake


@dataclass(slots=True)
class _RecordingListener:
    events: list[tuple[str, object]] = field(default_factory=list)

    async def on_state_change(self, name: str, old: CircuitState, new: CircuitState):
        self.events.append(("state", (name, old, new)))

    async def on_call_rejected(self, name: str):
        self.events.append(("rejected", name))

    async def on_call_succeeded(self, name: str, elapsed: float):
        self.events.append(("succeeded", name))

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float):
        self.events.append(("failed", (name, exc.__class__.__name__)))


@dataclass(slots=True)
class _ExplodingListener:
    async def on_state_change(self, name: str, old: CircuitState, new: CircuitState):
        raise RuntimeError("boom")

    async def on_call_rejected(self, name: str):
        raise RuntimeError("boom")

    async def on_call_succeeded(self, name: str, elapsed: float):
        raise RuntimeError("boom")

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float):
        raise RuntimeError("boom")


async def _fail() -> None:
    raise RuntimeError("nope")


async def _ok() -> str:
    return "ok"


async def test_closed_call_succeeds_and_stays_closed() -> None:
    storage = InMemoryBreakerStorage()
    breaker = CircuitBreaker(
        "GET /workflows",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=1.0),
        storage=storage,
    )

    assert await breaker.call(_ok) == "ok"
    snapshot = await storage.get_state("GET /workflows")
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0


async def test_call_with_async_callable_instance_forwards_arguments() -> None:
    breaker = CircuitBreaker("svc")

    class _AsyncCallable:
        async def __call__(self, value: str, *, suffix: str) -> str:
            return value + suffix

    assert await breaker.call(_AsyncCallable(), "o", suffix="k") == "ok"


async def test_opens_after_threshold_and_rejects_without_invoking(
    clock: _FakeClock,
) -> None:
    storage = InMemoryBreakerStorage()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=5, reset_timeout=30.0),
        storage=storage,
    )

    for _ in range(5):
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)

    invoked = False

    async def _tracked() -> str:
        nonlocal invoked
        invoked = True
        return "ok"

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(_tracked)

    assert invoked is False
    assert excinfo.value.breaker_name == "svc"
    assert excinfo.value.retry_after == pytest.approx(30.0)
    snapshot = await storage.get_state("svc")
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.failure_count == 5
    assert snapshot.next_attempt_at == clock.now() + timedelta(seconds=30.0)


async def test_stays_closed_below_threshold() -> None:
    storage = InMemoryBreakerStorage()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=3),
        storage=storage,
    )

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)

    assert await breaker.call(_ok) == "ok"
    snapshot = await storage.get_state("svc")
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0


async def test_failures_outside_monitoring_period_restart_count(
    clock: _FakeClock,
) -> None:
    storage = InMemoryBreakerStorage()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=2, monitoring_period=10.0),
        storage=storage,
    )

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    clock.advance(11.0)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    snapshot = await storage.get_state("svc")
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 1

    clock.advance(5.0)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    snapshot = await storage.get_state("svc")
    assert snapshot.state == CircuitState.OPEN


async def test_probe_after_reset_timeout_closes_circuit(clock: _FakeClock) -> None:
    storage = InMemoryBreakerStorage()
    listener = _RecordingListener()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=5.0),
        storage=storage,
        listeners=[listener],
    )

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    clock.advance(4.0)
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(_ok)
    assert excinfo.value.retry_after == pytest.approx(1.0)

    clock.advance(1.0)
    assert await breaker.call(_ok) == "ok"

    snapshot = await storage.get_state("svc")
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0
    state_events = [event for kind, event in listener.events if kind == "state"]
    assert state_events == [
        ("svc", CircuitState.CLOSED, CircuitState.OPEN),
        ("svc", CircuitState.OPEN, CircuitState.HALF_OPEN),
        ("svc", CircuitState.HALF_OPEN, CircuitState.CLOSED),
    ]


async def test_half_open_allows_single_probe_and_rejects_concurrent() -> None:
    storage = InMemoryBreakerStorage()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=0.0),
        storage=storage,
    )

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    started = asyncio.Event()
    release = asyncio.Event()

    async def _probe() -> str:
        started.set()
        await release.wait()
        return "ok"

    task = asyncio.create_task(breaker.call(_probe))
    await started.wait()

    assert (await breaker.snapshot()).state == CircuitState.HALF_OPEN
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(_ok)
    assert excinfo.value.retry_after == 0.0

    release.set()
    assert await task == "ok"

    assert await breaker.call(_ok) == "ok"
    snapshot = await storage.get_state("svc")
    assert snapshot.state == CircuitState.CLOSED


async def test_probe_failure_reopens_and_restarts_timeout(clock: _FakeClock) -> None:
    storage = InMemoryBreakerStorage()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=5.0),
        storage=storage,
    )

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    clock.advance(5.0)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(_fail)
    assert excinfo.value.retry_after == pytest.approx(5.0)
    snapshot = await storage.get_state("svc")
    assert snapshot.opened_at == clock.now()


async def test_excluded_exception_during_probe_is_neutral(clock: _FakeClock) -> None:
    class _Excluded(Exception):
        pass

    storage = InMemoryBreakerStorage()
    listener = _RecordingListener()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(
            failure_threshold=1,
            reset_timeout=5.0,
            expected_exceptions=(Exception,),
            excluded_exceptions=(_Excluded,),
        ),
        storage=storage,
        listeners=[listener],
    )

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    listener.events.clear()
    clock.advance(5.0)

    async def _excluded_probe() -> None:
        raise _Excluded("ignored")

    with pytest.raises(_Excluded):
        await breaker.call(_excluded_probe)

    snapshot = await storage.get_state("svc")
    assert snapshot.state == CircuitState.OPEN
    assert listener.events == [
        ("state", ("svc", CircuitState.OPEN, CircuitState.HALF_OPEN))
    ]

    assert await breaker.call(_ok) == "ok"
    snapshot = await storage.get_state("svc")
    assert snapshot.state == CircuitState.CLOSED


async def test_cancelled_request_does_not_count_as_failure() -> None:
    storage = InMemoryBreakerStorage()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1),
        storage=storage,
    )

    async def _cancelled() -> None:
        raise RequestCancelledError("stopped")

    with pytest.raises(RequestCancelledError):
        await breaker.call(_cancelled)

    snapshot = await storage.get_state("svc")
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0


async def test_reset_forces_closed() -> None:
    storage = InMemoryBreakerStorage()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=60.0),
        storage=storage,
    )
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    snapshot = await breaker.reset()

    assert snapshot.state == CircuitState.CLOSED
    assert await breaker.call(_ok) == "ok"


async def test_listener_exceptions_are_swallowed() -> None:
    recording = _RecordingListener()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=0.0),
        listeners=[_ExplodingListener(), recording],
    )

    assert await breaker.call(_ok) == "ok"
    assert ("succeeded", "svc") in recording.events


async def test_listener_exceptions_are_swallowed_for_all_non_success_events() -> None:
    recording = _RecordingListener()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=10.0),
        listeners=[_ExplodingListener(), recording],
    )

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    with pytest.raises(CircuitOpenError):
        await breaker.call(_fail)

    assert ("failed", ("svc", "RuntimeError")) in recording.events
    assert (
        "state",
        ("svc", CircuitState.CLOSED, CircuitState.OPEN),
    ) in recording.events
    assert ("rejected", "svc") in recording.events


async def test_logging_listener_emits_structured_events(
    fake_logger: FakeLogger,
) -> None:
    breaker = CircuitBreaker(
        "POST /workflows",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=10.0),
        listeners=[LoggingBreakerListener(fake_logger)],
    )

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    with pytest.raises(CircuitOpenError):
        await breaker.call(_ok)

    assert fake_logger.events == [
        "circuit_breaker.call_failed",
        "circuit_breaker.opened",
        "circuit_breaker.call_rejected",
    ]
    assert fake_logger.fields_for("circuit_breaker.opened") == [
        {"endpoint": "POST /workflows", "previous_state": "closed"}
    ]


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"failure_threshold": 0}, "failure_threshold must be >= 1"),
        ({"reset_timeout": -1.0}, "reset_timeout must be >= 0"),
        ({"monitoring_period": 0.0}, "monitoring_period must be > 0"),
    ],
)
async def test_config_rejects_invalid_values(
    overrides: dict[str, float], message: str
) -> None:
    with pytest.raises(ValueError, match=message):
        CircuitBreakerConfig(**overrides)  # type: ignore[arg-type]


async def test_probe_gate_uses_thread_lock_when_gil_disabled(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "flowguard.circuit_breaker.breaker.sys._is_gil_enabled",
        lambda: False,
        raising=False,
    )
    gate = breaker_mod._ProbeGate()

    assert gate.try_acquire() is True
    assert gate.held is True
    assert gate.try_acquire() is False
    gate.release()
    assert gate.try_acquire() is True
    gate.release()
