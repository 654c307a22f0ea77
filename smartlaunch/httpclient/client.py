"""HTTP client running requests through an interceptor chain."""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import uuid

from collections.abc import Iterable, Sequence
from typing import Any

import httpx

from .chain import Chain, Interceptor


logger = logging.getLogger("smartlaunch.http")

REQUEST_ID_HEADER = "X-RID"

_LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


def is_loopback_url(url: str | httpx.URL) -> bool:
    """Whether ``url`` points at localhost, a loopback address or ``*.localhost``."""
    try:
        host = httpx.URL(url).host.lower()
    except httpx.InvalidURL:
        return False
    return host in _LOOPBACK_HOSTS or host.endswith(".localhost")


class HTTPClient:
    """Send requests through global and per-request interceptors.

    Parameters
    ----------
    interceptors : Sequence[Interceptor], optional
        Interceptors applied to every request, outermost first.
    timeout : float
        Transport timeout in seconds.
    verify : bool
        Verify TLS certificates.
    transport : httpx.AsyncBaseTransport, optional
        Custom transport (e.g. ``httpx.MockTransport`` in tests).
    http_client : httpx.AsyncClient, optional
        Pre-built client to send with; takes precedence over the other
        transport options and is not closed by :meth:`aclose`.
    """

    def __init__(
        self,
        interceptors: Sequence[Interceptor] = (),
        timeout: float = 30.0,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.interceptors: list[Interceptor] = list(interceptors)
        self._owns_client = http_client is None
        self._timeout = timeout
        self._verify = verify
        self._transport = transport
        self._http_client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                verify=self._verify,
                transport=self._transport,
            )
            self._owns_client = True
        return self._http_client

    def build_request(self, method: str, url: str | httpx.URL, **kwargs: Any) -> httpx.Request:
        """Build a request with the underlying client's defaults."""
        return self._get_client().build_request(method, url, **kwargs)

    async def send(
        self,
        request: httpx.Request,
        interceptors: Iterable[Interceptor] = (),
    ) -> httpx.Response:
        """Send ``request`` through the interceptor chain.

        Every request is tagged with a unique ``X-RID`` header.

        Parameters
        ----------
        request : httpx.Request
            The request to send.
        interceptors : Iterable[Interceptor], optional
            Extra interceptors that run after the global ones.

        Returns
        -------
        httpx.Response
            The response returned by the outermost interceptor.
        """
        request.headers[REQUEST_ID_HEADER] = str(uuid.uuid4())
        chain = Chain(request, [*self.interceptors, *interceptors], self._transmit)
        return await chain.proceed(request)

    async def _transmit(self, request: httpx.Request) -> httpx.Response:
        logger.debug("%s %s", request.method, request.url)
        response = await self._get_client().send(request)
        logger.debug("%s %s -> %d", request.method, request.url, response.status_code)
        return response

    async def aclose(self) -> None:
        """Close the underlying client if this instance created it."""
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None if self._owns_client else self._http_client

    async def __aenter__(self) -> HTTPClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
