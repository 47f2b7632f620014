from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog
from tenacity import AsyncRetrying, RetryCallState

from flowguard.errors import HttpStatusError, RequestCancelledError
from flowguard.logging import StructuredLogger, log_info, log_warning
from flowguard.metrics import CallMetric
from flowguard.registry import ResilienceRegistry
from flowguard.retry import (
    RetryConfig,
    build_backoff_retrying,
    build_interruptible_sleep,
)
from flowguard.transport import (
    RequestDescriptor,
    Transport,
    TransportResponse,
    endpoint_key,
)


def _monotonic() -> float:
    return time.monotonic()


class RequestExecutor:
    """Run transport calls with retries, endpoint breakers and pool slots.

    Every attempt holds one pool slot for its endpoint and, unless skipped,
    runs inside that endpoint's circuit breaker. Backoff sleeps happen with
    the slot released.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        registry: ResilienceRegistry | None = None,
        retry_config: RetryConfig | None = None,
        logger: StructuredLogger | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """Create an executor.

        Args:
            transport: Call surface of the remote API.
            registry: Shared breaker, pool and metrics state. A private
                registry is built when omitted.
            retry_config: Default retry behavior, overridable per call.
            logger: Structured logger for retry events.
            sleep: Backoff sleep used when no stop event is supplied.
        """
        self._transport = transport
        self.registry = ResilienceRegistry() if registry is None else registry
        self.retry_config = RetryConfig() if retry_config is None else retry_config
        self._logger: StructuredLogger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )
        self._sleep = asyncio.sleep if sleep is None else sleep

    async def execute(
        self,
        descriptor: RequestDescriptor,
        *,
        skip_circuit_breaker: bool = False,
        skip_retry: bool = False,
        retry_config: RetryConfig | None = None,
        stop_event: asyncio.Event | None = None,
        acquire_timeout: float | None = None,
    ) -> TransportResponse:
        """Execute ``descriptor`` with the full resilience stack.

        Args:
            descriptor: Call to perform.
            skip_circuit_breaker: Bypass the endpoint breaker for this call.
            skip_retry: Make exactly one attempt.
            retry_config: Overrides the executor's default retry behavior.
            stop_event: Cancellation signal honored while waiting for a slot
                and during backoff sleeps.
            acquire_timeout: Seconds to wait for a pool slot per attempt.

        Returns:
            The transport response of the first successful attempt.

        Raises:
            HttpStatusError: Non-retryable status, or retries exhausted.
            TransportError: Network fault after retries were exhausted.
            PoolTimeoutError: No slot became free, after retries.
            CircuitOpenError: The endpoint breaker rejected the call.
            RequestCancelledError: ``stop_event`` was set.
        """
        config = self.retry_config if retry_config is None else retry_config
        if skip_retry:
            config = config.merged(max_retries=0)
        endpoint = endpoint_key(descriptor)
        descriptor = descriptor.with_default_timeout(
            self.registry.pool.config.connection_timeout
        )
        metric = CallMetric(
            endpoint=endpoint,
            method=descriptor.method.upper(),
            start_time=_monotonic(),
        )
        retrying = self._build_retrying(config, endpoint, stop_event)

        try:
            async for attempt in retrying:
                with attempt:
                    metric.retry_count = attempt.retry_state.attempt_number - 1
                    self._raise_if_stopped(stop_event, endpoint)
                    response = await self._attempt(
                        descriptor,
                        endpoint=endpoint,
                        skip_circuit_breaker=skip_circuit_breaker,
                        stop_event=stop_event,
                        acquire_timeout=acquire_timeout,
                    )
                    metric.status_code = response.status_code
                    metric.success = True
                    return response
        except HttpStatusError as exc:
            metric.status_code = exc.status_code
            metric.error = str(exc)
            raise
        except Exception as exc:
            metric.error = str(exc) or exc.__class__.__name__
            raise
        finally:
            metric.end_time = _monotonic()
            self.registry.metrics.record(metric)
            self._log_completion(metric)

        raise RuntimeError("Request retry loop exited unexpectedly.")

    def _log_completion(self, metric: CallMetric) -> None:
        fields: dict[str, object] = {
            "endpoint": metric.endpoint,
            "method": metric.method,
            "status_code": metric.status_code,
            "retry_count": metric.retry_count,
            "duration": metric.duration,
        }
        if metric.success:
            log_info(self._logger, "request.completed", **fields)
            return
        log_warning(self._logger, "request.failed", error=metric.error, **fields)

    async def _attempt(
        self,
        descriptor: RequestDescriptor,
        *,
        endpoint: str,
        skip_circuit_breaker: bool,
        stop_event: asyncio.Event | None,
        acquire_timeout: float | None,
    ) -> TransportResponse:
        async with self.registry.pool.lease(
            endpoint, timeout=acquire_timeout, stop_event=stop_event
        ):
            if skip_circuit_breaker:
                return await self._transport.call(descriptor)
            breaker = self.registry.breaker_for(endpoint)
            return await breaker.call(self._transport.call, descriptor)

    def _build_retrying(
        self,
        config: RetryConfig,
        endpoint: str,
        stop_event: asyncio.Event | None,
    ) -> AsyncRetrying:
        sleep = self._sleep
        if stop_event is not None:
            sleep = build_interruptible_sleep(stop_event)

        def _before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            error = None if outcome is None else outcome.exception()
            next_action = retry_state.next_action
            log_warning(
                self._logger,
                "request.retry_scheduled",
                endpoint=endpoint,
                attempt=retry_state.attempt_number,
                max_attempts=config.max_attempts,
                delay=None if next_action is None else next_action.sleep,
                error_type=None if error is None else error.__class__.__name__,
                error=None if error is None else str(error),
            )

        return build_backoff_retrying(
            config,
            sleep=sleep,
            before_sleep=_before_sleep,
            reraise=True,
        )

    @staticmethod
    def _raise_if_stopped(stop_event: asyncio.Event | None, endpoint: str) -> None:
        if stop_event is not None and stop_event.is_set():
            raise RequestCancelledError(f"Cancelled before calling {endpoint}.")
