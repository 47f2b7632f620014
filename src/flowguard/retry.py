from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass, field, replace

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from flowguard.errors import HttpStatusError, TransientError

DEFAULT_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryConfig:
    """Retry attempt count and capped exponential backoff settings.

    Attributes:
        max_retries: Retries after the first attempt; ``0`` means one attempt.
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound in seconds for any single delay.
        backoff_multiplier: Growth factor applied per attempt.
        retryable_status_codes: HTTP statuses that are worth retrying.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: frozenset[int] = field(
        default=DEFAULT_RETRYABLE_STATUS_CODES
    )

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < 0:
            raise ValueError("max_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        object.__setattr__(
            self, "retryable_status_codes", frozenset(self.retryable_status_codes)
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def merged(
        self,
        *,
        max_retries: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        backoff_multiplier: float | None = None,
        retryable_status_codes: Iterable[int] | None = None,
    ) -> RetryConfig:
        """Return a copy with every non-``None`` override applied."""
        overrides: dict[str, object] = {}
        if max_retries is not None:
            overrides["max_retries"] = max_retries
        if base_delay is not None:
            overrides["base_delay"] = base_delay
        if max_delay is not None:
            overrides["max_delay"] = max_delay
        if backoff_multiplier is not None:
            overrides["backoff_multiplier"] = backoff_multiplier
        if retryable_status_codes is not None:
            overrides["retryable_status_codes"] = frozenset(retryable_status_codes)
        return replace(self, **overrides)  # type: ignore[arg-type]


def compute_backoff_delay(config: RetryConfig, attempt: int) -> float:
    """Return the delay after zero-based ``attempt`` failed."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    delay = config.base_delay * (config.backoff_multiplier**attempt)
    return min(delay, config.max_delay)


class wait_capped_backoff(wait_base):
    """Tenacity wait strategy applying ``compute_backoff_delay``."""

    def __init__(self, config: RetryConfig) -> None:
        self.config = config

    def __call__(self, retry_state: RetryCallState) -> float:
        return compute_backoff_delay(self.config, retry_state.attempt_number - 1)


def is_retryable(error: BaseException, config: RetryConfig) -> bool:
    """Classify ``error`` as worth another attempt under ``config``.

    Network-level faults and pool timeouts are always retryable; HTTP failures
    only when their status is listed. Everything else, including open circuits
    and cancellations, fails fast.
    """
    if isinstance(error, TransientError):
        return True
    if isinstance(error, HttpStatusError):
        return error.status_code in config.retryable_status_codes
    return False


def build_interruptible_sleep(
    stop_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early when cancellation is requested."""

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep


def build_backoff_retrying(
    config: RetryConfig,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` honoring ``config`` classification and backoff."""
    options: dict[str, object] = {
        "retry": retry_if_exception(lambda error: is_retryable(error, config)),
        "wait": wait_capped_backoff(config),
        "stop": stop_after_attempt(config.max_attempts),
        "reraise": reraise,
    }
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(**options)  # type: ignore[arg-type]
