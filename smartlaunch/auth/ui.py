"""UI collaborators presenting the authorize URL and the patient selector."""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging
import webbrowser

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from ..exceptions import AuthenticationError, AuthFlowCancelled, AuthFlowTimeout
from .callback_server import OAuthCallbackServer


if TYPE_CHECKING:
    from ..server import Server
    from .oauth2 import OAuth2


logger = logging.getLogger("smartlaunch.auth")

PatientSelector = Callable[["Server", dict[str, Any], "OAuth2"], Awaitable[dict[str, Any]]]


class AuthUIHandler(ABC):
    """Presents authorization UI on behalf of :class:`~smartlaunch.auth.auth.Auth`."""

    @abstractmethod
    async def present_auth_session(
        self, start_url: str, callback_scheme: str, oauth: OAuth2
    ) -> str:
        """Show ``start_url`` and return the redirect URL it ends on.

        Raises
        ------
        AuthFlowCancelled
            If the user dismisses the session.
        """

    @abstractmethod
    def cancel_ongoing_auth_session(self) -> None:
        """Close a session started by :meth:`present_auth_session`."""

    @abstractmethod
    async def present_patient_selector(
        self, server: Server, parameters: dict[str, Any], oauth: OAuth2
    ) -> dict[str, Any]:
        """Let the user pick a patient and return the enriched parameters."""


class NoUIAuthHandler(AuthUIHandler):
    """Handler for headless use; every presentation fails."""

    async def present_auth_session(
        self, start_url: str, callback_scheme: str, oauth: OAuth2
    ) -> str:
        msg = "No UI handler configured to present the authorize URL"
        raise AuthenticationError(msg, provider=oauth.name)

    def cancel_ongoing_auth_session(self) -> None:
        return None

    async def present_patient_selector(
        self, server: Server, parameters: dict[str, Any], oauth: OAuth2
    ) -> dict[str, Any]:
        msg = "No UI handler configured to present a patient selector"
        raise AuthenticationError(msg, provider=oauth.name)


class LoopbackAuthUIHandler(AuthUIHandler):
    """Opens the system browser and captures the redirect on localhost.

    The redirect URI configured for the client must be an ``http``
    loopback URL; its host, port and path are served by an
    :class:`OAuthCallbackServer` for the duration of the session.

    Parameters
    ----------
    timeout : float
        Seconds to wait for the redirect.
    open_browser : Callable[[str], bool]
        Function opening a URL (default ``webbrowser.open``).
    patient_selector : PatientSelector, optional
        Coroutine choosing a patient; by default parameters pass through.
    """

    def __init__(
        self,
        timeout: float = 120.0,
        open_browser: Callable[[str], bool] = webbrowser.open,
        patient_selector: PatientSelector | None = None,
    ) -> None:
        self.timeout = timeout
        self.open_browser = open_browser
        self.patient_selector = patient_selector
        self._server: OAuthCallbackServer | None = None

    async def present_auth_session(
        self, start_url: str, callback_scheme: str, oauth: OAuth2
    ) -> str:
        redirect = urlparse(oauth.redirect or "")
        if redirect.scheme != "http" or not redirect.hostname:
            msg = f"Loopback sessions need an http redirect URI, got {oauth.redirect!r}"
            raise AuthenticationError(msg, provider=oauth.name)

        server = OAuthCallbackServer(redirect.hostname, redirect.port or 80, redirect.path)
        self._server = server
        server.start()
        try:
            logger.info("Opening authorize URL in the system browser")
            if not self.open_browser(start_url):
                logger.info("Open this URL to authorize: %s", start_url)
            url = await asyncio.to_thread(server.wait_for_callback, self.timeout)
        finally:
            await asyncio.to_thread(server.stop)
            if self._server is server:
                self._server = None

        if url is not None:
            return url
        if server.cancelled:
            msg = "Authorization session was cancelled"
            raise AuthFlowCancelled(msg, provider=oauth.name)
        msg = f"No redirect received within {self.timeout}s"
        raise AuthFlowTimeout(msg, timeout=self.timeout, provider=oauth.name)

    def cancel_ongoing_auth_session(self) -> None:
        if self._server is not None:
            self._server.cancel()

    async def present_patient_selector(
        self, server: Server, parameters: dict[str, Any], oauth: OAuth2
    ) -> dict[str, Any]:
        if self.patient_selector is None:
            return parameters
        return await self.patient_selector(server, parameters, oauth)
