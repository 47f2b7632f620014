"""Observability hooks for circuit breakers."""

from typing import Protocol

import structlog

from flowguard.circuit_breaker.state import CircuitState
from flowguard.logging import StructuredLogger, log_info, log_warning


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        ``on_state_change(OPEN → HALF_OPEN)`` is emitted per probe attempt per
        breaker instance. Storage does not persist ``HALF_OPEN``.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        """Handle failed protected call completion."""


class LoggingBreakerListener:
    """Emit breaker transitions and rejections as structured log events."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        if new == CircuitState.OPEN:
            log_warning(
                self._logger,
                "circuit_breaker.opened",
                endpoint=name,
                previous_state=str(old),
            )
            return
        log_info(
            self._logger,
            "circuit_breaker.state_changed",
            endpoint=name,
            previous_state=str(old),
            state=str(new),
        )

    async def on_call_rejected(self, name: str) -> None:
        log_warning(self._logger, "circuit_breaker.call_rejected", endpoint=name)

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        return None

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        log_warning(
            self._logger,
            "circuit_breaker.call_failed",
            endpoint=name,
            error_type=exc.__class__.__name__,
            error=str(exc),
            elapsed=elapsed,
        )
