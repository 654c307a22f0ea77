"""Interceptor chain.

Each :class:`Interceptor` receives a :class:`Chain` holding the outbound
request and calls :meth:`Chain.proceed` to hand a (possibly modified)
request to the next stage. The innermost stage sends it over the wire.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence

import httpx


Send = Callable[[httpx.Request], Awaitable[httpx.Response]]


class Interceptor(ABC):
    """A request/response transformer in the pipeline."""

    @abstractmethod
    async def intercept(self, chain: Chain) -> httpx.Response:
        """Process ``chain.request`` and return the response.

        Implementations call ``await chain.proceed(request)`` zero or
        more times.
        """


class Chain:
    """The remainder of the pipeline as seen by one interceptor.

    Parameters
    ----------
    request : httpx.Request
        The request entering this stage.
    interceptors : Sequence[Interceptor]
        All interceptors of the pipeline, outermost first.
    send : Callable
        Transport call used once the interceptors are exhausted.
    index : int
        Position of the next interceptor to run.
    """

    def __init__(
        self,
        request: httpx.Request,
        interceptors: Sequence[Interceptor],
        send: Send,
        index: int = 0,
    ) -> None:
        self.request = request
        self._interceptors = interceptors
        self._send = send
        self._index = index

    async def proceed(self, request: httpx.Request) -> httpx.Response:
        """Run the next stage with ``request``."""
        if self._index < len(self._interceptors):
            following = Chain(request, self._interceptors, self._send, self._index + 1)
            return await self._interceptors[self._index].intercept(following)
        return await self._send(request)
