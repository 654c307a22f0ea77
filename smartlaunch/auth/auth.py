"""Authorization orchestration.

:class:`Auth` drives one server's authorization: it normalizes the
requested scope, builds the authorize request, presents it through the
UI handler (or the system browser), waits for the redirect and extracts
the launch context from the token response. Mutable state lives in
:class:`~smartlaunch.auth.core.AuthCore`.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging
import weakref

from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import httpx

from ..config import OAuth2Settings
from ..exceptions import (
    AuthenticationError,
    ConfigurationError,
    NoRefreshTokenError,
)
from ..httpclient import is_loopback_url
from ..log import redact_sensitive_data
from ..types import AuthFlowState, AuthGranularity, AuthProperties, AuthType
from .core import AuthCore
from .oauth2 import OAuth2, RegistrationHook, make_oauth
from .ui import AuthUIHandler, NoUIAuthHandler


if TYPE_CHECKING:
    from ..server import Server


logger = logging.getLogger("smartlaunch.auth")

DEFAULT_SCOPES = frozenset({"user/*.cruds", "openid", "fhirUser"})

_WILDCARD_SCOPES = {
    "user/*.*": "user/*.cruds",
    "patient/*.*": "patient/*.rs",
    "system/*.*": "system/*.cruds",
}

_GRANULARITY_SCOPES = {
    AuthGranularity.TOKEN_ONLY: None,
    AuthGranularity.LAUNCH_CONTEXT: "launch",
    AuthGranularity.PATIENT_SELECT_WEB: "launch/patient",
    AuthGranularity.PATIENT_SELECT_NATIVE: "launch/patient",
}


def _normalize_scope_token(token: str) -> str:
    if token in _WILDCARD_SCOPES:
        return _WILDCARD_SCOPES[token]
    if token.endswith(".read"):
        return token[: -len(".read")] + ".rs"
    if token.endswith(".write"):
        return token[: -len(".write")] + ".cruds"
    return token


def normalize_scope(scope: str | None, granularity: AuthGranularity) -> str:
    """Rewrite a scope string to SMART v2 syntax for ``granularity``.

    v1 wildcards and ``.read``/``.write`` suffixes become their v2
    equivalents, ``openid fhirUser`` is always requested and the launch
    scope matching ``granularity`` is added. The result is sorted, so
    the same set of scopes always yields the same string.

    Parameters
    ----------
    scope : str or None
        The configured scope; empty means ``user/*.cruds openid fhirUser``.
    granularity : AuthGranularity
        The launch context requested.

    Returns
    -------
    str
        Space-separated, sorted scopes.
    """
    tokens = set((scope or "").split()) or set(DEFAULT_SCOPES)
    normalized = {_normalize_scope_token(token) for token in tokens}
    normalized.update({"openid", "fhirUser"})
    launch_scope = _GRANULARITY_SCOPES[granularity]
    if launch_scope:
        normalized.add(launch_scope)
    return " ".join(sorted(normalized))


def redirect_matches_template(url: str, template: str) -> bool:
    """Whether ``url`` is a redirect to the configured ``template``.

    Either ``url`` starts with the template, or scheme and host agree so
    that loopback redirects on a different port are still accepted.
    """
    if url.startswith(template):
        return True
    redirect, expected = urlparse(url), urlparse(template)
    return bool(expected.scheme) and (redirect.scheme, redirect.hostname) == (
        expected.scheme,
        expected.hostname,
    )


class Auth:
    """Authorization flow for one server.

    Parameters
    ----------
    auth_type : AuthType
        The OAuth2 grant to use.
    server : Server, optional
        The owning server; held weakly.
    aud : str
        Value of the ``aud`` authorize parameter (the server base URL).
    settings : OAuth2Settings or Mapping, optional
        Client settings for the grant.
    ui_handler : AuthUIHandler, optional
        Presents authorize URLs and the patient selector.
    allow_insecure_connections : bool
        Skip TLS verification of loopback OAuth endpoints.
    transport : httpx.AsyncBaseTransport, optional
        Transport for the token and registration requests.
    timeout : float
        Timeout for OAuth requests.
    """

    def __init__(
        self,
        auth_type: AuthType,
        server: Server | None = None,
        aud: str = "",
        settings: OAuth2Settings | Mapping[str, Any] | None = None,
        ui_handler: AuthUIHandler | None = None,
        *,
        allow_insecure_connections: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.type = auth_type
        self._server_ref = weakref.ref(server) if server is not None else None
        self.aud = aud
        self.ui_handler = ui_handler or NoUIAuthHandler()
        self.allow_insecure_connections = allow_insecure_connections
        self._transport = transport
        self._timeout = timeout

        self.settings: OAuth2Settings | None = None
        self.core = AuthCore(logger=logger)
        self._registration_hook: RegistrationHook | None = None
        self._retired: list[OAuth2] = []
        self._flow_state = AuthFlowState.IDLE
        self._authorization: asyncio.Future[dict[str, Any]] | None = None
        self._attempt_finished: asyncio.Future[None] | None = None

        if settings is not None:
            self.configure(settings)

    @property
    def server(self) -> Server | None:
        """The owning server, if still alive."""
        return self._server_ref() if self._server_ref is not None else None

    @property
    def flow_state(self) -> AuthFlowState:
        """Where the current authorization attempt is."""
        return self._flow_state

    @property
    def oauth(self) -> OAuth2 | None:
        return self.core.oauth

    def configure(self, settings: OAuth2Settings | Mapping[str, Any]) -> None:
        """Replace the OAuth2 instance with one built from ``settings``.

        Tokens and dynamically registered credentials of the previous
        instance carry over.
        """
        if not isinstance(settings, OAuth2Settings):
            settings = OAuth2Settings(**dict(settings))
        self.settings = settings

        endpoint = settings.token_uri or settings.authorize_uri or ""
        verify = not (self.allow_insecure_connections and is_loopback_url(endpoint))
        if not verify:
            logger.warning("TLS verification disabled for loopback endpoint %s", endpoint)

        oauth = make_oauth(
            self.type, settings, timeout=self._timeout, verify=verify, transport=self._transport
        )
        previous = self.core.oauth
        if oauth is not None:
            oauth.on_before_dynamic_client_registration = self._registration_hook
            if previous is not None:
                oauth.adopt_session(previous)
        if previous is not None and previous is not oauth:
            self._retired.append(previous)
        self.core.update_oauth(oauth)
        logger.debug("Configured %s with %s", self.type.value, settings.redacted())

    # ── Launch parameter and registration ───────────────────────────

    @property
    def launch_parameter(self) -> str | None:
        return self.core.launch_parameter

    def set_launch_parameter(self, value: str | None) -> None:
        self.core.update_launch_parameter(value)

    def update_dynamic_client_registration(self, handler: RegistrationHook | None) -> None:
        """Install a hook adjusting the dynamic registration request body."""
        self._registration_hook = handler
        self.core.set_dynamic_client_registration_handler(handler)

    async def register_client_if_needed(self) -> dict[str, Any] | None:
        """Register the client dynamically if it has no ``client_id`` yet."""
        return await self.core.require_oauth().register_client_if_needed()

    def forget_client_registration(self) -> None:
        self.core.forget_client()

    # ── Authorization ───────────────────────────────────────────────

    def has_unexpired_token(self) -> bool:
        return self.core.has_unexpired_token()

    def is_awaiting_authorization(self) -> bool:
        """Whether an authorize call is waiting for its redirect."""
        return self._authorization is not None and not self._authorization.done()

    async def authorize(self, properties: AuthProperties | None = None) -> dict[str, Any]:
        """Run the authorization flow.

        A pending authorization is aborted first. When an unexpired
        token exists the flow is skipped, unless web patient selection
        is requested.

        Parameters
        ----------
        properties : AuthProperties, optional
            Presentation and launch granularity.

        Returns
        -------
        dict[str, Any]
            Token response parameters, with ``launch_context`` added when
            the server granted one.

        Raises
        ------
        AuthenticationError
            On cancellation, a server error or a failed exchange.
        MissingAuthorizationError
            If no OAuth2 instance is configured.
        """
        properties = properties or AuthProperties()
        if self.is_awaiting_authorization():
            logger.info("Aborting pending authorization before starting a new one")
            finished = self._attempt_finished
            self.abort()
            if finished is not None:
                # The UI session of the aborted attempt must close before a new one opens
                await asyncio.shield(finished)

        try:
            if self.core.has_unexpired_token() and (
                properties.granularity is not AuthGranularity.PATIENT_SELECT_WEB
            ):
                logger.debug("Unexpired token available, skipping authorization")
                return await self._post_auth(properties, {})

            self._flow_state = AuthFlowState.CONFIGURING
            oauth = self.core.require_oauth()
            self.core.configure(normalize_scope(oauth.scope, properties.granularity))

            params = {"aud": self.aud}
            if self.core.launch_parameter:
                params["launch"] = self.core.launch_parameter

            if self.type is AuthType.CLIENT_CREDENTIALS:
                self._flow_state = AuthFlowState.EXCHANGING
                await oauth.register_client_if_needed()
                parameters = await oauth.try_to_obtain_access_token()
            elif properties.embedded:
                await oauth.register_client_if_needed()
                parameters = await self._await_authorization_result(
                    lambda: self._present_embedded(oauth, params)
                )
            else:
                await oauth.register_client_if_needed()
                parameters = await self._await_authorization_result(
                    lambda: self._open_in_browser(params)
                )
            return await self._post_auth(properties, parameters)
        finally:
            if not self.is_awaiting_authorization():
                self._flow_state = AuthFlowState.IDLE

    async def _present_embedded(self, oauth: OAuth2, params: dict[str, str]) -> None:
        start_url = self.core.authorize_url(params)
        template = self.core.redirect_template()
        if template is None:
            msg = "Missing redirect URI"
            raise ConfigurationError(msg)
        callback_scheme = urlparse(template).scheme or template
        redirect = await self.ui_handler.present_auth_session(start_url, callback_scheme, oauth)
        self._flow_state = AuthFlowState.EXCHANGING
        await self.core.handle_redirect(redirect)

    async def _open_in_browser(self, params: dict[str, str]) -> None:
        self.core.open_authorize_url_in_browser(self.core.authorize_url(params))

    async def _await_authorization_result(
        self, operation: Callable[[], Awaitable[None]]
    ) -> dict[str, Any]:
        future = self.core.wait_for_authorization()
        finished: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._authorization = future
        self._attempt_finished = finished
        self._flow_state = AuthFlowState.AWAITING_REDIRECT
        try:
            await operation()
            return await future
        except BaseException:
            # Also runs on task cancellation; a superseded attempt leaves the new one alone
            if self._authorization is future:
                self.ui_handler.cancel_ongoing_auth_session()
                self.core.terminate_authorization()
            raise
        finally:
            if self._authorization is future:
                self._authorization = None
            if self._attempt_finished is finished:
                self._attempt_finished = None
            finished.set_result(None)

    async def handle_redirect(self, url: str) -> bool:
        """Complete a browser authorization with its redirect URL.

        Returns
        -------
        bool
            False if ``url`` is not a redirect to the configured URI or
            the exchange failed; the waiting ``authorize`` call receives
            the failure.
        """
        template = self.core.redirect_template()
        if template is None or not redirect_matches_template(url, template):
            return False
        self._flow_state = AuthFlowState.EXCHANGING
        try:
            await self.core.handle_redirect(url)
        except (AuthenticationError, ConfigurationError) as exc:
            logger.warning("Redirect could not be handled: %s", exc)
            return False
        return True

    async def _post_auth(
        self, properties: AuthProperties, parameters: dict[str, Any]
    ) -> dict[str, Any]:
        self._flow_state = AuthFlowState.POST_PROCESSING
        enriched = dict(parameters)
        server = self.server

        context = self.core.parse_launch_context(parameters)
        self.core.update_launch_context(context)
        if server is not None:
            server.update_launch_context(context)
        if context is not None:
            enriched["launch_context"] = self.core.encode_launch_context(context)

        if (
            properties.granularity is AuthGranularity.PATIENT_SELECT_NATIVE
            and self.type is not AuthType.CLIENT_CREDENTIALS
        ):
            if server is None:
                msg = "Server is gone, cannot present the patient selector"
                raise ConfigurationError(msg)
            enriched = await self.ui_handler.present_patient_selector(
                server, enriched, self.core.require_oauth()
            )
        else:
            logger.debug("Did authorize with parameters %s", redact_sensitive_data(enriched))

        self.core.update_launch_parameter(None)
        return enriched

    def abort(self) -> None:
        """Cancel a pending authorization and its UI session."""
        self._authorization = None
        self._flow_state = AuthFlowState.IDLE
        self.ui_handler.cancel_ongoing_auth_session()
        self.core.terminate_authorization()

    def reset(self) -> None:
        """Drop tokens, launch context and launch parameter."""
        self.core.update_launch_context(None)
        self.core.update_launch_parameter(None)
        self.core.forget_tokens()

    # ── Tokens ──────────────────────────────────────────────────────

    async def refresh_access_token(self, params: Mapping[str, str] | None = None) -> None:
        """Obtain a new access token without user interaction.

        Raises
        ------
        NoRefreshTokenError
            If the refresh reports success but no unexpired token is present.
        TokenRefreshError
            If the token endpoint rejects the refresh.
        """
        oauth = self.core.require_oauth()
        await oauth.try_to_obtain_access_token(params)
        if not oauth.has_unexpired_access_token():
            raise NoRefreshTokenError(provider=oauth.name)

    def client_credentials(self) -> tuple[str, str | None, str | None] | None:
        """``(client_id, client_secret, client_name)`` or None without a client id."""
        oauth = self.core.oauth
        if oauth is None or not oauth.client_id:
            return None
        return oauth.client_id, oauth.client_secret, oauth.client_name

    def token_snapshot(self) -> dict[str, Any]:
        """Token state for diagnostics, with token values redacted."""
        oauth = self.core.oauth
        if oauth is None:
            return {}
        snapshot: dict[str, Any] = {
            "access_token": "[REDACTED]" if oauth.access_token else "<missing>",
        }
        if oauth.refresh_token:
            snapshot["refresh_token"] = "[REDACTED]"
        if oauth.scope:
            snapshot["scope"] = oauth.scope
        if oauth.tokens is not None and oauth.tokens.expires_at is not None:
            snapshot["expires_at"] = datetime.fromtimestamp(
                oauth.tokens.expires_at, tz=timezone.utc
            ).isoformat()
        return snapshot

    @property
    def access_token(self) -> str | None:
        return self.core.access_token

    @property
    def refresh_token(self) -> str | None:
        return self.core.refresh_token

    @property
    def id_token(self) -> str | None:
        return self.core.id_token

    async def aclose(self) -> None:
        """Close the HTTP clients of current and replaced OAuth2 instances."""
        retired, self._retired = self._retired, []
        for oauth in [*retired, self.core.oauth]:
            if oauth is not None:
                await oauth.close()
