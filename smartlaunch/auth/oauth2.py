"""OAuth2 grant implementations used by the authorization engine.

:class:`OAuth2` is the collaborator :class:`~smartlaunch.auth.core.AuthCore`
drives: it builds authorize URLs, validates redirects, talks to the token
and registration endpoints and holds the resulting tokens. Outcomes of an
interactive authorization are reported through ``did_authorize_or_fail``.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import secrets
import webbrowser

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any, ClassVar
from urllib.parse import parse_qsl, urlencode, urlparse

import httpx

from ..config import OAuth2Settings
from ..exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    AuthorizationServerError,
    ClientRegistrationError,
    ConfigurationError,
    NoRefreshTokenError,
    StateMismatchError,
    TokenError,
    TokenRefreshError,
)
from ..log import redact_sensitive_data
from ..types import AuthType, OAuthTokenSet
from .pkce import PKCEChallenge


logger = logging.getLogger("smartlaunch.auth")

AuthorizeCallback = Callable[[dict[str, Any] | None, BaseException | None], None]
RegistrationHook = Callable[[str], Mapping[str, Any] | None]


def _oauth_error(response: httpx.Response) -> tuple[str | None, str | None]:
    """Extract ``error`` and ``error_description`` from an error response."""
    try:
        payload = response.json()
    except ValueError:
        return None, response.text or None
    if not isinstance(payload, dict):
        return None, None
    return payload.get("error"), payload.get("error_description")


class OAuth2(ABC):
    """Base class for an OAuth2 grant.

    Parameters
    ----------
    settings : OAuth2Settings or Mapping, optional
        Client settings; a mapping is validated into ``OAuth2Settings``.
    timeout : float
        Timeout for token and registration requests.
    verify : bool
        Verify TLS certificates of the OAuth endpoints.
    transport : httpx.AsyncBaseTransport, optional
        Custom transport for the token client (tests use ``httpx.MockTransport``).
    """

    grant: ClassVar[AuthType]
    response_type: ClassVar[str | None] = None
    registration_grant_types: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        settings: OAuth2Settings | Mapping[str, Any] | None = None,
        *,
        timeout: float = 30.0,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if settings is None:
            settings = OAuth2Settings()
        elif not isinstance(settings, OAuth2Settings):
            settings = OAuth2Settings(**dict(settings))
        self.settings = settings
        self.client_id = settings.client_id
        self.client_secret = settings.client_secret
        self.client_name = settings.client_name or settings.title
        self.redirect = settings.redirect_uri
        self.scope = settings.scope
        self.authorize_uri = settings.authorize_uri
        self.token_uri = settings.token_uri
        self.registration_uri = settings.registration_uri

        self.tokens: OAuthTokenSet | None = None
        self.did_authorize_or_fail: AuthorizeCallback | None = None
        self.on_before_dynamic_client_registration: RegistrationHook | None = None

        self._state: str | None = None
        self._registered = False
        self._timeout = timeout
        self._verify = verify
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        """Implementation name used in error context."""
        return self.__class__.__name__

    # ── Tokens ──────────────────────────────────────────────────────

    @property
    def access_token(self) -> str | None:
        """The current access token."""
        if self.tokens is None or not self.tokens.access_token:
            return None
        return self.tokens.access_token

    @access_token.setter
    def access_token(self, value: str | None) -> None:
        if value is None:
            self.tokens = None
        elif self.tokens is None:
            self.tokens = OAuthTokenSet(access_token=value)
        else:
            self.tokens.access_token = value

    @property
    def refresh_token(self) -> str | None:
        """The current refresh token."""
        return self.tokens.refresh_token if self.tokens else None

    @refresh_token.setter
    def refresh_token(self, value: str | None) -> None:
        if self.tokens is None:
            self.tokens = OAuthTokenSet(access_token="", refresh_token=value)
        else:
            self.tokens.refresh_token = value

    @property
    def id_token(self) -> str | None:
        """The current OIDC ID token."""
        return self.tokens.id_token if self.tokens else None

    @id_token.setter
    def id_token(self, value: str | None) -> None:
        if self.tokens is None:
            self.tokens = OAuthTokenSet(access_token="", id_token=value)
        else:
            self.tokens.id_token = value

    def has_unexpired_access_token(self) -> bool:
        """Whether a non-empty access token exists and has not expired."""
        return bool(self.tokens and self.tokens.access_token and not self.tokens.is_expired)

    def forget_tokens(self) -> None:
        """Drop all tokens."""
        self.tokens = None

    def forget_client(self) -> None:
        """Drop client credentials obtained through dynamic registration."""
        if self._registered:
            self.client_id = None
            self.client_secret = None
            self._registered = False

    def adopt_session(self, previous: OAuth2) -> None:
        """Take over tokens and registered credentials from a replaced instance."""
        self.tokens = previous.tokens
        if previous._registered and not self.client_id:
            self.client_id = previous.client_id
            self.client_secret = previous.client_secret
            self._registered = True

    # ── HTTP ────────────────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout, verify=self._verify, transport=self._transport
            )
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def _token_request(
        self,
        data: dict[str, str],
        error_cls: type[TokenError] = TokenError,
    ) -> dict[str, Any]:
        """POST a form to the token endpoint and return the decoded body.

        Confidential clients authenticate with HTTP Basic; public clients
        send ``client_id`` in the form.

        Raises
        ------
        TokenError
            ``error_cls`` when the request fails or the body carries no
            access token.
        """
        if not self.token_uri:
            msg = "No token endpoint configured"
            raise ConfigurationError(msg)

        auth: httpx.BasicAuth | None = None
        if self.client_secret:
            auth = httpx.BasicAuth(self.client_id or "", self.client_secret)
        elif self.client_id:
            data.setdefault("client_id", self.client_id)

        context = {"provider": self.name, "token_endpoint": self.token_uri}
        client = await self._get_client()
        try:
            resp = await client.post(
                self.token_uri,
                data=data,
                headers={"Accept": "application/json"},
                auth=auth,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            error, description = _oauth_error(exc.response)
            msg = (
                f"Token request failed with status {exc.response.status_code}: "
                f"{description or error or 'no details'}"
            )
            raise error_cls(msg, error=error, status=exc.response.status_code, **context) from exc
        except httpx.HTTPError as exc:
            msg = f"Token request failed: {exc}"
            raise error_cls(msg, **context) from exc

        try:
            payload = resp.json()
        except ValueError as exc:
            msg = "Token response is not valid JSON"
            raise error_cls(msg, **context) from exc
        if not isinstance(payload, dict) or not payload.get("access_token"):
            msg = "Token response did not contain an access_token"
            raise error_cls(msg, **context)

        logger.debug("Token response: %s", redact_sensitive_data(payload))
        return payload

    def _store_tokens(self, raw: Mapping[str, Any]) -> None:
        previous_refresh = self.refresh_token
        self.tokens = OAuthTokenSet.from_response(dict(raw))
        if not self.tokens.refresh_token:
            self.tokens.refresh_token = previous_refresh

    # ── Authorization ───────────────────────────────────────────────

    def authorize_url(self, params: Mapping[str, str] | None = None) -> str:
        """Build the authorize URL and start a pending authorization.

        Parameters
        ----------
        params : Mapping[str, str], optional
            Additional query parameters (``aud``, ``launch``).

        Returns
        -------
        str
            The full authorize URL.
        """
        if not self.authorize_uri:
            msg = "No authorize endpoint configured"
            raise ConfigurationError(msg)
        if not self.client_id:
            msg = "No client_id configured; register the client first"
            raise ConfigurationError(msg)
        if not self.redirect:
            msg = "Missing redirect URI"
            raise ConfigurationError(msg)

        self._state = secrets.token_urlsafe(32)
        query: dict[str, str] = {
            "response_type": self.response_type or "",
            "client_id": self.client_id,
            "redirect_uri": self.redirect,
            "state": self._state,
        }
        if self.scope:
            query["scope"] = self.scope
        query.update(self._authorize_extra_params())
        if params:
            query.update(params)

        logger.debug("Authorize parameters: %s", redact_sensitive_data(query))
        separator = "&" if "?" in self.authorize_uri else "?"
        return f"{self.authorize_uri}{separator}{urlencode(query)}"

    def _authorize_extra_params(self) -> dict[str, str]:
        return {}

    @property
    def is_authorizing(self) -> bool:
        """Whether an authorize URL was issued and no redirect handled yet."""
        return self._state is not None

    def _redirect_params(self, url: str) -> dict[str, str]:
        """Parameters carried by a redirect URL (query by default)."""
        return dict(parse_qsl(urlparse(url).query))

    def _validate_redirect(self, params: Mapping[str, str]) -> None:
        if self._state is None:
            msg = "No authorization is pending"
            raise AuthenticationError(msg, provider=self.name)
        if params.get("error"):
            raise AuthorizationServerError(
                params["error"], params.get("error_description"), provider=self.name
            )
        if params.get("state") != self._state:
            msg = "Redirect state does not match the authorize request"
            raise StateMismatchError(msg, provider=self.name)

    @abstractmethod
    async def _complete_authorization(self, params: dict[str, str]) -> dict[str, Any]:
        """Turn validated redirect parameters into token response parameters."""

    async def handle_redirect(self, url: str) -> dict[str, Any]:
        """Validate a redirect and complete the authorization.

        The outcome is also reported through ``did_authorize_or_fail``.

        Parameters
        ----------
        url : str
            The full redirect URL.

        Returns
        -------
        dict[str, Any]
            The token response parameters.

        Raises
        ------
        AuthenticationError
            On a server error, state mismatch or failed code exchange.
        """
        try:
            params = self._redirect_params(url)
            self._validate_redirect(params)
            raw = await self._complete_authorization(params)
        except (AuthenticationError, ConfigurationError) as exc:
            self._state = None
            self._did_fail(exc)
            raise
        self._state = None
        self._did_authorize(raw)
        return raw

    def abort_authorization(self) -> None:
        """Abandon a pending authorization, reporting a cancellation."""
        if self._state is None:
            return
        self._state = None
        self._did_fail(AuthFlowCancelled("Authorization was cancelled", provider=self.name))

    def _did_authorize(self, params: dict[str, Any]) -> None:
        callback = self.did_authorize_or_fail
        if callback is not None:
            callback(params, None)

    def _did_fail(self, error: BaseException) -> None:
        callback = self.did_authorize_or_fail
        if callback is not None:
            callback(None, error)

    async def try_to_obtain_access_token(
        self, params: Mapping[str, str] | None = None
    ) -> dict[str, Any]:
        """Obtain a fresh access token without user interaction.

        Uses the refresh token.

        Raises
        ------
        NoRefreshTokenError
            If there is no refresh token.
        TokenRefreshError
            If the token endpoint rejects the refresh.
        """
        refresh = self.refresh_token
        if not refresh:
            raise NoRefreshTokenError(provider=self.name)
        data = {"grant_type": "refresh_token", "refresh_token": refresh}
        if params:
            data.update(params)
        raw = await self._token_request(data, TokenRefreshError)
        self._store_tokens(raw)
        logger.debug("Access token refreshed")
        return raw

    def open_authorize_url_in_browser(self, url: str) -> None:
        """Open ``url`` in the system browser."""
        if not webbrowser.open(url):
            msg = "Unable to open the system browser"
            raise AuthenticationError(msg, provider=self.name)

    # ── Dynamic client registration (RFC 7591) ──────────────────────

    def _registration_body(self) -> dict[str, Any]:
        redirect_uris = self.settings.redirect_uris or ([self.redirect] if self.redirect else [])
        body: dict[str, Any] = {
            "client_name": self.client_name or "SMART",
            "redirect_uris": redirect_uris,
            "grant_types": list(self.registration_grant_types),
            "token_endpoint_auth_method": "client_secret_basic" if self.client_secret else "none",
        }
        if self.response_type:
            body["response_types"] = [self.response_type]
        if self.scope:
            body["scope"] = self.scope
        if self.settings.logo_uri:
            body["logo_uri"] = self.settings.logo_uri
        return body

    async def register_client_if_needed(self) -> dict[str, Any] | None:
        """Register this client when no ``client_id`` is configured.

        Returns
        -------
        dict or None
            The registration response, or None when already registered.

        Raises
        ------
        ClientRegistrationError
            If registration is needed but unavailable or rejected.
        """
        if self.client_id:
            return None
        if not self.registration_uri:
            msg = "No client_id configured and no registration endpoint available"
            raise ClientRegistrationError(msg, provider=self.name)

        body = self._registration_body()
        if self.on_before_dynamic_client_registration is not None:
            overrides = self.on_before_dynamic_client_registration(self.registration_uri)
            if overrides:
                body.update(overrides)

        client = await self._get_client()
        try:
            resp = await client.post(
                self.registration_uri,
                json=body,
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            error, description = _oauth_error(exc.response)
            msg = f"Client registration failed: {description or error or exc.response.status_code}"
            raise ClientRegistrationError(msg, provider=self.name, error=error) from exc
        except (httpx.HTTPError, ValueError) as exc:
            msg = f"Client registration failed: {exc}"
            raise ClientRegistrationError(msg, provider=self.name) from exc

        if not isinstance(payload, dict) or not payload.get("client_id"):
            msg = "Registration response did not contain a client_id"
            raise ClientRegistrationError(msg, provider=self.name)

        self.client_id = payload["client_id"]
        self.client_secret = payload.get("client_secret")
        self._registered = True
        logger.info("Registered client %s at %s", self.client_id, self.registration_uri)
        return payload


class OAuth2CodeGrant(OAuth2):
    """Authorization code grant, always protected with PKCE S256."""

    grant = AuthType.CODE_GRANT
    response_type = "code"
    registration_grant_types = ("authorization_code", "refresh_token")

    def __init__(
        self,
        settings: OAuth2Settings | Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(settings, **kwargs)
        if self.settings.use_pkce is False:
            logger.warning("PKCE cannot be disabled for the authorization code grant")
        self.pkce: PKCEChallenge | None = None

    def _authorize_extra_params(self) -> dict[str, str]:
        self.pkce = PKCEChallenge.generate()
        return {
            "code_challenge": self.pkce.challenge,
            "code_challenge_method": self.pkce.method,
        }

    async def _complete_authorization(self, params: dict[str, str]) -> dict[str, Any]:
        code = params.get("code")
        if not code:
            msg = "Redirect did not contain an authorization code"
            raise AuthenticationError(msg, provider=self.name)
        if self.pkce is None:
            msg = "No PKCE verifier for this authorization"
            raise AuthenticationError(msg, provider=self.name)

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect or "",
            "code_verifier": self.pkce.verifier,
        }
        try:
            raw = await self._token_request(data)
        finally:
            self.pkce = None
        self._store_tokens(raw)
        return raw


class OAuth2ImplicitGrant(OAuth2):
    """Implicit grant; tokens arrive in the redirect fragment."""

    grant = AuthType.IMPLICIT
    response_type = "token"
    registration_grant_types = ("implicit",)

    def _redirect_params(self, url: str) -> dict[str, str]:
        return dict(parse_qsl(urlparse(url).fragment))

    async def _complete_authorization(self, params: dict[str, str]) -> dict[str, Any]:
        if not params.get("access_token"):
            msg = "Redirect did not contain an access_token"
            raise AuthenticationError(msg, provider=self.name)
        raw: dict[str, Any] = {k: v for k, v in params.items() if k != "state"}
        self._store_tokens(raw)
        return raw

    async def try_to_obtain_access_token(
        self, params: Mapping[str, str] | None = None
    ) -> dict[str, Any]:
        raise NoRefreshTokenError("The implicit grant cannot refresh tokens", provider=self.name)


class OAuth2ClientCredentials(OAuth2):
    """Client credentials grant for backend services; no user interaction."""

    grant = AuthType.CLIENT_CREDENTIALS
    registration_grant_types = ("client_credentials",)

    def authorize_url(self, params: Mapping[str, str] | None = None) -> str:
        msg = "The client credentials grant does not use an authorize URL"
        raise AuthenticationError(msg, provider=self.name)

    async def _complete_authorization(self, params: dict[str, str]) -> dict[str, Any]:
        msg = "The client credentials grant does not handle redirects"
        raise AuthenticationError(msg, provider=self.name)

    async def try_to_obtain_access_token(
        self, params: Mapping[str, str] | None = None
    ) -> dict[str, Any]:
        """Request a new token with the client credentials."""
        data = {"grant_type": "client_credentials"}
        if self.scope:
            data["scope"] = self.scope
        if params:
            data.update(params)
        raw = await self._token_request(data)
        self._store_tokens(raw)
        return raw


_GRANTS: dict[AuthType, type[OAuth2]] = {
    AuthType.CODE_GRANT: OAuth2CodeGrant,
    AuthType.IMPLICIT: OAuth2ImplicitGrant,
    AuthType.CLIENT_CREDENTIALS: OAuth2ClientCredentials,
}


def make_oauth(
    auth_type: AuthType,
    settings: OAuth2Settings | Mapping[str, Any] | None,
    **kwargs: Any,
) -> OAuth2 | None:
    """Create the grant implementation for ``auth_type``.

    Parameters
    ----------
    auth_type : AuthType
        The grant to use.
    settings : OAuth2Settings or Mapping or None
        Client settings; None yields no instance.
    **kwargs : Any
        Forwarded to the grant constructor (``timeout``, ``verify``, ``transport``).

    Returns
    -------
    OAuth2 or None
        The instance, or None for ``AuthType.NONE`` or missing settings.
    """
    if settings is None or auth_type is AuthType.NONE:
        return None
    if auth_type is AuthType.CODE_GRANT:
        data = settings.to_dict() if isinstance(settings, OAuth2Settings) else dict(settings)
        if data.get("use_pkce") is None:
            data["use_pkce"] = True
        settings = data
    return _GRANTS[auth_type](settings, **kwargs)
