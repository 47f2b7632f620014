from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Protocol
from urllib.parse import urlsplit

import httpx

from flowguard.errors import HttpStatusError, RequestSetupError, TransportError

DEFAULT_REQUEST_TIMEOUT = 30.0


@dataclass(frozen=True)
class RequestDescriptor:
    """Opaque description of one remote call.

    Attributes:
        method: HTTP method.
        url: Path relative to the transport base URL, or an absolute URL.
        headers: Extra request headers.
        params: Query string parameters.
        body: JSON-serializable request body.
        timeout: Per-call timeout in seconds; ``None`` uses the default.
        endpoint: Path template used for the endpoint key, for example
            ``/workflows/{id}``. Defaults to the URL path.
    """

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, object] | None = None
    body: object | None = None
    timeout: float | None = None
    endpoint: str | None = None

    def with_default_timeout(self, timeout: float) -> RequestDescriptor:
        """Return a copy carrying ``timeout`` when none was requested."""
        if self.timeout is not None:
            return self
        return replace(self, timeout=timeout)


@dataclass(frozen=True)
class TransportResponse:
    """Decoded response of a successful call."""

    status_code: int
    data: object
    headers: Mapping[str, str] = field(default_factory=dict)


class Transport(Protocol):
    """Async call surface consumed by ``RequestExecutor``."""

    async def call(self, descriptor: RequestDescriptor) -> TransportResponse:
        """Perform one call.

        Raises:
            TransportError: For network-level faults worth retrying.
            RequestSetupError: For client-side faults that fail fast.
            HttpStatusError: For non-2xx responses.
        """


def endpoint_key(descriptor: RequestDescriptor) -> str:
    """Derive the ``"<METHOD> <path-template>"`` partition key."""
    method = descriptor.method.strip().upper() or "GET"
    template = descriptor.endpoint
    if template is None:
        template = urlsplit(descriptor.url).path or "/"
    return f"{method} {template}"


class HttpxTransport:
    """``Transport`` backed by a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Create an httpx transport.

        Args:
            client: Shared async HTTP client, normally carrying the base URL
                and authentication headers.
            default_timeout: Timeout in seconds injected when a descriptor
                has none.
        """
        self._client = client
        self._default_timeout = default_timeout

    async def call(self, descriptor: RequestDescriptor) -> TransportResponse:
        timeout = (
            self._default_timeout if descriptor.timeout is None else descriptor.timeout
        )
        try:
            response = await self._client.request(
                descriptor.method.upper(),
                descriptor.url,
                headers=dict(descriptor.headers),
                params=descriptor.params,  # type: ignore[arg-type]
                json=descriptor.body,
                timeout=timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise HttpStatusError(
                str(exc),
                status_code=exc.response.status_code,
                response_body=exc.response.text,
            ) from exc
        except httpx.TimeoutException as exc:
            raise TransportError(str(exc) or "timeout", code="timeout") from exc
        except httpx.ConnectError as exc:
            raise TransportError(str(exc) or "connect", code="connect") from exc
        except httpx.NetworkError as exc:
            raise TransportError(str(exc) or "network", code="network") from exc
        except httpx.RemoteProtocolError as exc:
            raise TransportError(str(exc) or "protocol", code="protocol") from exc
        except httpx.TooManyRedirects as exc:
            raise RequestSetupError(str(exc) or "redirects", code="redirects") from exc
        except httpx.DecodingError as exc:
            raise RequestSetupError(str(exc) or "decoding", code="decoding") from exc
        except httpx.RequestError as exc:
            raise RequestSetupError(str(exc) or "request", code="request") from exc

        return TransportResponse(
            status_code=response.status_code,
            data=self._decode(response),
            headers=dict(response.headers),
        )

    @staticmethod
    def _decode(response: httpx.Response) -> object:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text
