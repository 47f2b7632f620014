"""Async per-endpoint circuit breaker.

Key behavior notes:
  - One breaker exists per endpoint key; all breakers of a registry share a
    single storage backend.
  - Storage persists only ``CLOSED`` and ``OPEN``. ``HALF_OPEN`` is an
    ephemeral, per-instance probe mode reported while a probe is in flight.
  - Half-open probing admits exactly one in-flight probe per breaker. Callers
    arriving during the probe are rejected with ``retry_after=0``.
  - If an excluded exception is raised during a probe, the probe is treated as
    if it never happened: no storage changes. The circuit remains ``OPEN`` and
    a later call may attempt a fresh probe.
"""

from flowguard.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from flowguard.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from flowguard.circuit_breaker.metrics import BreakerListener, LoggingBreakerListener
from flowguard.circuit_breaker.state import BreakerSnapshot, CircuitState
from flowguard.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)

__all__ = [
    "AbstractBreakerStorage",
    "BreakerListener",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "InMemoryBreakerStorage",
    "LoggingBreakerListener",
]
