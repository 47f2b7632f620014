"""Shared error types for flowguard."""

from __future__ import annotations


class FlowguardError(Exception):
    """Base exception for all flowguard failures."""


class TransientError(FlowguardError):
    """Generic retry-safe transient dependency failure."""


class TransportError(TransientError):
    """Raised when the remote API could not be reached at the network level.

    Attributes:
        code: Short fault classification such as ``timeout`` or ``connect``.
    """

    def __init__(self, message: str, *, code: str = "network") -> None:
        super().__init__(message)
        self.code = code


class RequestSetupError(FlowguardError):
    """Raised when a request could not be built, sent or decoded client-side.

    Covers faults such as an unsupported URL scheme or too many redirects,
    which do not clear up on retry.

    Attributes:
        code: Short fault classification such as ``protocol`` or ``redirects``.
    """

    def __init__(self, message: str, *, code: str = "request") -> None:
        super().__init__(message)
        self.code = code


class PoolTimeoutError(TransientError):
    """Raised when no connection slot became free within the acquire timeout."""

    def __init__(self, endpoint: str, timeout: float) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        super().__init__(f"pool_timeout: {endpoint} timeout={timeout:g}s")


class HttpStatusError(FlowguardError):
    """Raised when the remote API answers with a non-2xx status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        response_body: str | None = None,
    ) -> None:
        """Initialize HTTP status error metadata.

        Args:
            message: Human-readable error message.
            status_code: HTTP status returned by the remote API.
            response_body: Optional response payload text.
        """
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class RequestCancelledError(FlowguardError):
    """Raised when a caller's stop event interrupts a pool wait or backoff."""


class RecoveryExhaustedError(FlowguardError):
    """Raised when the primary call and every fallback strategy failed.

    Attributes:
        operation: Logical operation name.
        last_error: Message of the last underlying failure.
        attempt_count: Number of fallback strategies attempted.
    """

    def __init__(self, operation: str, *, last_error: str, attempt_count: int) -> None:
        self.operation = operation
        self.last_error = last_error
        self.attempt_count = attempt_count
        super().__init__(
            f"All recovery strategies failed for operation: {operation}. "
            f"Last error: {last_error}"
        )
