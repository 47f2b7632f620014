"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of one endpoint breaker.

    Attributes:
        name: Breaker name, normally the endpoint key.
        state: Persisted breaker state.
        failure_count: Consecutive failures counted in the monitoring window.
        last_failure_at: Timestamp of the last counted failure, if any.
        opened_at: Timestamp when the breaker entered ``OPEN``, if open.
        next_attempt_at: Earliest time a half-open probe may run, if open.
    """

    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: datetime | None
    opened_at: datetime | None
    next_attempt_at: datetime | None = None

    def as_dict(self) -> dict[str, object]:
        """Return a JSON-friendly mapping of the snapshot."""
        return {
            "name": self.name,
            "state": str(self.state),
            "failure_count": self.failure_count,
            "last_failure_at": _isoformat(self.last_failure_at),
            "opened_at": _isoformat(self.opened_at),
            "next_attempt_at": _isoformat(self.next_attempt_at),
        }


def _isoformat(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()
