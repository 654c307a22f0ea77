"""Interceptors applying the authorization to outgoing requests."""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import httpx

from ..exceptions import NoAccessTokenError, TokenRefreshError
from ..httpclient import Interceptor
from .challenge import parse_www_authenticate


if TYPE_CHECKING:
    from ..httpclient import Chain
    from .auth import Auth


logger = logging.getLogger("smartlaunch.auth")

RefreshAction = Callable[[], Awaitable[None]]


def _set_bearer(request: httpx.Request, token: str | None) -> None:
    if token:
        request.headers["Authorization"] = f"Bearer {token}"


class BearerInterceptor(Interceptor):
    """Adds ``Authorization: Bearer <token>`` when an access token exists."""

    def __init__(self, auth: Auth | None = None) -> None:
        self.auth = auth

    async def intercept(self, chain: Chain) -> httpx.Response:
        request = chain.request
        if self.auth is not None:
            _set_bearer(request, self.auth.access_token)
        return await chain.proceed(request)


class RefreshCoordinator:
    """Collapses concurrent refresh requests onto one in-flight task.

    Parameters
    ----------
    refresh_action : Callable, optional
        Coroutine factory performing the actual refresh.
    """

    def __init__(self, refresh_action: RefreshAction | None = None) -> None:
        self.refresh_action = refresh_action
        self._task: asyncio.Task[None] | None = None

    @property
    def is_refreshing(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> None:
        """Refresh, or join the refresh already running.

        Every caller observes the outcome of the same attempt; once it
        finishes the next call starts a new one.
        """
        if self._task is None:
            if self.refresh_action is None:
                msg = "No refresh action configured"
                raise TokenRefreshError(msg)
            task = asyncio.ensure_future(self.refresh_action())
            self._task = task
            task.add_done_callback(self._clear)
        return await asyncio.shield(self._task)

    def _clear(self, task: asyncio.Task[None]) -> None:
        if self._task is task:
            self._task = None
        if not task.cancelled():
            # Waiters get the exception through shield; this only marks it retrieved
            task.exception()


class AuthRefreshInterceptor(Interceptor):
    """Refreshes the token once when the server rejects it as invalid.

    Only a ``401`` carrying ``WWW-Authenticate: Bearer error="invalid_token"``
    (the error value in any case) triggers a refresh; the request is then re-sent once with the new
    token. Other ``401`` reasons pass through unchanged.

    Parameters
    ----------
    auth : Auth, optional
        Source of the access token and the refresh operation.
    coordinator : RefreshCoordinator, optional
        Shared single-flight coordinator.
    """

    def __init__(
        self, auth: Auth | None = None, coordinator: RefreshCoordinator | None = None
    ) -> None:
        self.coordinator = coordinator or RefreshCoordinator()
        self._auth: Auth | None = None
        self.auth = auth

    @property
    def auth(self) -> Auth | None:
        return self._auth

    @auth.setter
    def auth(self, auth: Auth | None) -> None:
        self._auth = auth
        self.coordinator.refresh_action = auth.refresh_access_token if auth is not None else None

    async def intercept(self, chain: Chain) -> httpx.Response:
        return await self._process(chain, chain.request, has_retried=False)

    async def _process(
        self, chain: Chain, request: httpx.Request, has_retried: bool
    ) -> httpx.Response:
        response = await chain.proceed(request)
        if has_retried or self._auth is None or not self._should_refresh(response):
            return response

        logger.info("Access token rejected for %s, refreshing", request.url)
        try:
            await self.coordinator.refresh()
        except TokenRefreshError:
            raise
        except Exception as exc:
            msg = f"Token refresh failed: {exc}"
            raise TokenRefreshError(msg) from exc

        token = self._auth.access_token
        if not token:
            raise NoAccessTokenError
        await response.aclose()
        _set_bearer(request, token)
        return await self._process(chain, request, has_retried=True)

    @staticmethod
    def _should_refresh(response: httpx.Response) -> bool:
        if response.status_code != 401:
            return False
        challenge = parse_www_authenticate(response.headers.get("WWW-Authenticate"))
        return (
            challenge is not None
            and challenge.is_bearer()
            and (challenge.error or "").lower() == "invalid_token"
        )
