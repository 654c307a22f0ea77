"""Mutable authorization state.

``AuthCore`` owns the OAuth2 instance, the launch context and the launch
parameter of one server. None of its methods suspend, so each call is
atomic with respect to other tasks on the event loop; anything that
awaits goes through :class:`~smartlaunch.auth.auth.Auth`.
"""

from __future__ import annotations

import asyncio
import logging

from collections.abc import Callable, Mapping
from typing import Any

from ..exceptions import AuthFlowCancelled, MissingAuthorizationError
from .launch_context import LaunchContext, parse_launch_context
from .oauth2 import OAuth2, RegistrationHook


def _settle(future: asyncio.Future[dict[str, Any]], error: BaseException) -> None:
    """Fail ``future`` without asyncio warning when nobody awaits it."""
    if future.done():
        return
    future.set_exception(error)
    # Marks the exception as retrieved; awaiting the future still raises it
    future.exception()


class AuthCore:
    """Single owner of a server's authorization state.

    Parameters
    ----------
    oauth : OAuth2, optional
        The grant implementation.
    launch_context : LaunchContext, optional
        Context from a previous authorization.
    launch_parameter : str, optional
        Opaque ``launch`` value from an EHR launch.
    logger : logging.Logger, optional
        Logger for tolerated failures.
    """

    def __init__(
        self,
        oauth: OAuth2 | None = None,
        launch_context: LaunchContext | None = None,
        launch_parameter: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._oauth = oauth
        self._launch_context = launch_context
        self._launch_parameter = launch_parameter
        self.logger = logger or logging.getLogger("smartlaunch.auth")
        self._pending: asyncio.Future[dict[str, Any]] | None = None

    # ── OAuth2 lifecycle ────────────────────────────────────────────

    @property
    def oauth(self) -> OAuth2 | None:
        """The current OAuth2 instance."""
        return self._oauth

    def update_oauth(self, oauth: OAuth2 | None) -> None:
        """Swap in a new OAuth2 instance."""
        self._oauth = oauth

    def require_oauth(self) -> OAuth2:
        """The current OAuth2 instance, or raise ``MissingAuthorizationError``."""
        if self._oauth is None:
            raise MissingAuthorizationError
        return self._oauth

    def configure(self, scope: str) -> None:
        """Set the scope requested by the next authorization."""
        if self._oauth is not None:
            self._oauth.scope = scope

    def has_unexpired_token(self) -> bool:
        return self._oauth.has_unexpired_access_token() if self._oauth else False

    async def handle_redirect(self, url: str) -> dict[str, Any]:
        """Hand a redirect URL to the OAuth2 instance."""
        return await self.require_oauth().handle_redirect(url)

    def forget_tokens(self) -> None:
        if self._oauth is not None:
            self._oauth.forget_tokens()

    def forget_client(self) -> None:
        if self._oauth is not None:
            self._oauth.forget_client()

    def authorize_url(self, params: Mapping[str, str] | None = None) -> str:
        return self.require_oauth().authorize_url(params)

    def open_authorize_url_in_browser(self, url: str) -> None:
        self.require_oauth().open_authorize_url_in_browser(url)

    def abort_authorization(self) -> None:
        if self._oauth is not None:
            self._oauth.abort_authorization()

    def redirect_template(self) -> str | None:
        """The configured redirect URI, if any."""
        if self._oauth is None or not self._oauth.redirect:
            return None
        return self._oauth.redirect

    def set_dynamic_client_registration_handler(self, handler: RegistrationHook | None) -> None:
        if self._oauth is not None:
            self._oauth.on_before_dynamic_client_registration = handler

    def set_authorization_callback(
        self, handler: Callable[[dict[str, Any] | None, BaseException | None], None] | None
    ) -> None:
        if self._oauth is not None:
            self._oauth.did_authorize_or_fail = handler

    # ── Tokens ──────────────────────────────────────────────────────

    @property
    def access_token(self) -> str | None:
        return self._oauth.access_token if self._oauth else None

    @access_token.setter
    def access_token(self, value: str | None) -> None:
        if self._oauth is not None:
            self._oauth.access_token = value

    @property
    def refresh_token(self) -> str | None:
        return self._oauth.refresh_token if self._oauth else None

    @property
    def id_token(self) -> str | None:
        return self._oauth.id_token if self._oauth else None

    # ── Launch context ──────────────────────────────────────────────

    @property
    def launch_context(self) -> LaunchContext | None:
        return self._launch_context

    def update_launch_context(self, context: LaunchContext | None) -> None:
        self._launch_context = context

    @property
    def launch_parameter(self) -> str | None:
        return self._launch_parameter

    def update_launch_parameter(self, parameter: str | None) -> None:
        self._launch_parameter = parameter

    def parse_launch_context(self, parameters: Mapping[str, Any]) -> LaunchContext | None:
        """Launch context from token response parameters, or None."""
        return parse_launch_context(dict(parameters))

    def encode_launch_context(self, context: LaunchContext) -> dict[str, Any]:
        """Wire representation of ``context``."""
        return context.to_dict()

    # ── Waiting for an authorization ────────────────────────────────

    @property
    def pending_authorization(self) -> asyncio.Future[dict[str, Any]] | None:
        """Future of the authorization being awaited, if any."""
        return self._pending

    def wait_for_authorization(self) -> asyncio.Future[dict[str, Any]]:
        """Create the future the next ``did_authorize_or_fail`` resolves.

        Replaces any previous wait, which is failed with a cancellation.
        """
        oauth = self.require_oauth()
        if self._pending is not None:
            _settle(self._pending, AuthFlowCancelled("Superseded by a new authorization"))

        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending = future

        def _on_outcome(parameters: dict[str, Any] | None, error: BaseException | None) -> None:
            if self._pending is future:
                self._pending = None
            if oauth.did_authorize_or_fail is _on_outcome:
                oauth.did_authorize_or_fail = None
            if error is not None:
                _settle(future, error)
            elif not future.done():
                future.set_result(parameters or {})

        oauth.did_authorize_or_fail = _on_outcome
        return future

    def cancel_authorization(self) -> None:
        """End the wait with a cancellation, leaving the OAuth2 state alone."""
        self._finish_authorization(should_abort=False)

    def terminate_authorization(self) -> None:
        """End the wait with a cancellation and abort the OAuth2 flow."""
        self._finish_authorization(should_abort=True)

    def _finish_authorization(self, should_abort: bool) -> None:
        future = self._pending
        self._pending = None
        self.set_authorization_callback(None)
        if future is not None:
            _settle(future, AuthFlowCancelled("Authorization was cancelled"))
        if should_abort:
            self.abort_authorization()
