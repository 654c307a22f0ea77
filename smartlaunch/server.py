"""A SMART-protected FHIR server: discovery, authorization and data requests."""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

from __future__ import annotations

import asyncio
import logging
import posixpath

from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any
from urllib.parse import urljoin

import httpx

from .auth.auth import Auth
from .auth.interceptors import AuthRefreshInterceptor, BearerInterceptor
from .auth.launch_context import LaunchContext
from .auth.oauth2 import RegistrationHook
from .auth.ui import AuthUIHandler, NoUIAuthHandler
from .config import OAuth2Settings
from .discovery import ConfigurationCache, SMARTConfiguration, fetch_smart_configuration
from .error_mapping import map_error
from .exceptions import (
    ConfigurationError,
    DecodingError,
    MissingAuthorizationError,
    SMARTClientError,
)
from .httpclient import HTTPClient, Interceptor, RetryInterceptor, RetryPolicy, is_loopback_url
from .types import AuthProperties, AuthType


logger = logging.getLogger("smartlaunch")

FHIR_JSON = "application/fhir+json"


def _infer_auth_type(settings: OAuth2Settings) -> AuthType | None:
    """The grant named by ``authorize_type``, else inferred from the endpoints."""
    auth_type: AuthType | None = None
    if settings.authorize_type:
        try:
            auth_type = AuthType(settings.authorize_type)
        except ValueError:
            logger.warning("Unknown authorize_type %r", settings.authorize_type)
    if auth_type in (None, AuthType.NONE) and settings.authorize_uri:
        auth_type = AuthType.CODE_GRANT if settings.token_uri else AuthType.IMPLICIT
    return auth_type


class Server:
    """A FHIR server protected by SMART App Launch.

    Owns the request pipeline (bearer injection, refresh on
    ``invalid_token``, retry with backoff), the discovery cache and the
    :class:`~smartlaunch.auth.auth.Auth` instance.

    Parameters
    ----------
    base_url : str
        Absolute base URL of the FHIR server.
    auth : OAuth2Settings or Mapping, optional
        Client settings; endpoints missing here come from discovery.
    retry_policy : RetryPolicy, optional
        Retry policy for data requests (default: honor one ``Retry-After``).
    sleep : Callable, optional
        Awaitable used between retries.
    additional_interceptors : Sequence[Interceptor]
        Interceptors placed after the retry stage.
    ui_handler : AuthUIHandler, optional
        Presents authorize URLs and the patient selector.
    allow_insecure_connections : bool
        Skip TLS verification when talking to loopback hosts.
    https_auth_base : str, optional
        HTTPS base that ``http`` OAuth endpoints from discovery are moved onto.
    timeout : float
        Transport timeout in seconds.
    transport : httpx.AsyncBaseTransport, optional
        Custom transport for data and OAuth requests.

    Raises
    ------
    ConfigurationError
        If ``base_url`` is not absolute.
    """

    def __init__(
        self,
        base_url: str,
        auth: OAuth2Settings | Mapping[str, Any] | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        additional_interceptors: Sequence[Interceptor] = (),
        ui_handler: AuthUIHandler | None = None,
        allow_insecure_connections: bool = False,
        https_auth_base: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        url = httpx.URL(base_url)
        if not url.scheme or not url.host:
            msg = f"Server base URL must be absolute: {base_url!r}"
            raise ConfigurationError(msg, url=base_url)

        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.aud = base_url[:-1] if len(base_url) > 1 and base_url.endswith("/") else base_url
        self.name: str | None = None
        self.launch_context: LaunchContext | None = None
        self.must_abort_authorization = False
        self.ui_handler = ui_handler or NoUIAuthHandler()
        self.allow_insecure_connections = allow_insecure_connections
        self.https_auth_base = https_auth_base
        self.retry_policy = retry_policy or RetryPolicy()
        self._timeout = timeout
        self._transport = transport

        self._bearer = BearerInterceptor()
        self._refresh = AuthRefreshInterceptor()
        retry = (
            RetryInterceptor(self.retry_policy, sleep)
            if sleep is not None
            else RetryInterceptor(self.retry_policy)
        )
        self.http = HTTPClient(
            [self._bearer, self._refresh, retry, *additional_interceptors],
            timeout=timeout,
            verify=not (allow_insecure_connections and is_loopback_url(self.base_url)),
            transport=transport,
        )
        self._configuration_cache = ConfigurationCache()
        self._on_before_registration: RegistrationHook | None = None
        self._auth: Auth | None = None
        self._retired_auths: list[Auth] = []
        self._auth_settings: OAuth2Settings | None = None
        self.auth_settings = auth

    # ── Auth wiring ─────────────────────────────────────────────────

    @property
    def auth(self) -> Auth | None:
        """The authorization engine, once settings allow creating one."""
        return self._auth

    @auth.setter
    def auth(self, auth: Auth | None) -> None:
        if self._auth is not None and self._auth is not auth:
            self._retired_auths.append(self._auth)
        self._auth = auth
        self._bearer.auth = auth
        self._refresh.auth = auth
        if auth is not None:
            auth.update_dynamic_client_registration(self._on_before_registration)
            logger.debug("Initialized server auth of type %s", auth.type.value)

    @property
    def auth_settings(self) -> OAuth2Settings | None:
        return self._auth_settings

    @auth_settings.setter
    def auth_settings(self, settings: OAuth2Settings | Mapping[str, Any] | None) -> None:
        if settings is not None and not isinstance(settings, OAuth2Settings):
            settings = OAuth2Settings(**dict(settings))
        self._auth_settings = settings
        self._instantiate_auth()

    @property
    def on_before_dynamic_client_registration(self) -> RegistrationHook | None:
        """Hook adjusting the dynamic client registration request body."""
        return self._on_before_registration

    @on_before_dynamic_client_registration.setter
    def on_before_dynamic_client_registration(self, hook: RegistrationHook | None) -> None:
        self._on_before_registration = hook
        if self._auth is not None:
            self._auth.update_dynamic_client_registration(hook)

    def _instantiate_auth(self) -> bool:
        settings = self._auth_settings
        if settings is None:
            return False
        auth_type = _infer_auth_type(settings)
        if auth_type is None:
            return False
        if self._auth is not None and self._auth.type is auth_type:
            self._auth.configure(settings)
            return True
        self.auth = Auth(
            auth_type,
            self,
            self.aud,
            settings,
            self.ui_handler,
            allow_insecure_connections=self.allow_insecure_connections,
            transport=self._transport,
            timeout=self._timeout,
        )
        return True

    def _require_auth(self) -> Auth:
        if self._auth is None:
            raise MissingAuthorizationError
        return self._auth

    def merge_auth_settings(self, additional: OAuth2Settings | Mapping[str, Any]) -> None:
        """Overlay ``additional`` onto the current auth settings."""
        if isinstance(additional, OAuth2Settings):
            additional = additional.to_dict()
        merged = self._auth_settings.to_dict() if self._auth_settings else {}
        merged.update(additional)
        self.auth_settings = merged

    # ── Discovery ───────────────────────────────────────────────────

    async def get_smart_configuration(self, force_refresh: bool = False) -> SMARTConfiguration:
        """The discovery document, fetched once and cached.

        Parameters
        ----------
        force_refresh : bool
            Ignore the cached document.

        Raises
        ------
        ClientConfigurationError
            If the document cannot be fetched or decoded.
        """
        return await self._configuration_cache.get(self._fetch_smart_configuration, force_refresh)

    async def _fetch_smart_configuration(self) -> SMARTConfiguration:
        configuration = await fetch_smart_configuration(self.http, self.base_url)
        return self._rewrite_configuration(configuration)

    def _rewrite_configuration(self, configuration: SMARTConfiguration) -> SMARTConfiguration:
        update: dict[str, Any] = {}
        for name in ("authorization_endpoint", "token_endpoint", "registration_endpoint"):
            endpoint = getattr(configuration, name)
            if endpoint is None:
                continue
            rewritten = self._rewrite_oauth_endpoint(endpoint)
            if rewritten != endpoint:
                update[name] = rewritten
        return configuration.model_copy(update=update) if update else configuration

    def _rewrite_oauth_endpoint(self, endpoint: str) -> str:
        """Move an ``http`` OAuth endpoint onto ``https_auth_base``."""
        if not self.https_auth_base:
            return endpoint
        url = httpx.URL(endpoint)
        if url.scheme.lower() != "http":
            return endpoint
        base = httpx.URL(self.https_auth_base)

        base_path = posixpath.normpath(base.path) if base.path else ""
        url_path = posixpath.normpath(url.path) if url.path else ""
        if base_path in ("", "/", "."):
            path = url_path
        else:
            separator = "" if url_path.startswith("/") else "/"
            path = f"{base_path.rstrip('/')}{separator}{url_path}"

        rewritten = str(
            url.copy_with(scheme=base.scheme, host=base.host, port=base.port, path=path)
        )
        logger.debug("Rewriting OAuth endpoint from %s to %s", endpoint, rewritten)
        return rewritten

    async def ready(self) -> None:
        """Make sure discovery ran and an authorization engine exists.

        Raises
        ------
        ClientConfigurationError
            If discovery fails.
        ConfigurationError
            If the server does not support PKCE S256 or no authorization
            method can be determined.
        """
        configuration = await self.get_smart_configuration()
        if not configuration.supports_pkce_s256():
            msg = f"SMART configuration at {self.base_url} does not advertise PKCE S256 support"
            raise ConfigurationError(msg, url=self.base_url)
        self._merge_discovered_endpoints(configuration)
        if self._auth is None and not self._instantiate_auth():
            msg = "Failed to detect the authorization method from SMART configuration"
            raise ConfigurationError(msg, url=self.base_url)

    def _merge_discovered_endpoints(self, configuration: SMARTConfiguration) -> None:
        current = self._auth_settings.to_dict() if self._auth_settings else {}
        merged = dict(current)
        merged.setdefault("authorize_uri", configuration.authorization_endpoint)
        merged.setdefault("token_uri", configuration.token_endpoint)
        if configuration.registration_endpoint:
            merged.setdefault("registration_uri", configuration.registration_endpoint)
        merged.setdefault("aud", self.aud)
        if merged != current:
            self.auth_settings = merged

    # ── Authorization ───────────────────────────────────────────────

    async def authorize(self, properties: AuthProperties | None = None) -> dict[str, Any] | None:
        """Authorize and return the selected patient, if any.

        The patient comes from ``patient_resource`` in the token response,
        or is read from ``Patient/{patient}``.

        Returns
        -------
        dict or None
            The Patient resource as JSON, or None when no patient is in
            context or the authorization was aborted.
        """
        await self.ready()
        auth = self._require_auth()
        try:
            parameters = await auth.authorize(properties or AuthProperties())
        except asyncio.CancelledError:
            self.must_abort_authorization = True
            auth.abort()
            raise

        if self.must_abort_authorization:
            self.must_abort_authorization = False
            return None

        patient = parameters.get("patient_resource")
        if isinstance(patient, dict):
            return patient

        patient_id = parameters.get("patient")
        if isinstance(patient_id, str) and patient_id:
            try:
                patient = await self.read_patient(patient_id)
            except SMARTClientError as exc:
                logger.debug("Did read patient with result failure(%s)", exc)
                raise
            logger.debug("Did read patient with result success(%s)", patient_id)
            return patient
        return None

    def abort(self) -> None:
        """Abort a pending authorization."""
        self.must_abort_authorization = True
        if self._auth is not None:
            self._auth.abort()

    def reset(self) -> None:
        """Abort any authorization and drop tokens and launch context."""
        self.must_abort_authorization = True
        self.launch_context = None
        if self._auth is not None:
            self._auth.abort()
            self._auth.reset()

    async def register_if_needed(self) -> dict[str, Any] | None:
        """Run dynamic client registration when no ``client_id`` is configured."""
        await self.ready()
        return await self._require_auth().register_client_if_needed()

    def forget_client_registration(self) -> None:
        """Drop registered credentials and the authorization engine."""
        if self._auth is not None:
            self._auth.forget_client_registration()
        self.auth = None

    def update_launch_context(self, context: LaunchContext | None) -> None:
        self.launch_context = context

    @property
    def auth_client_credentials(self) -> tuple[str, str | None, str | None] | None:
        """``(client_id, client_secret, client_name)`` of the current client."""
        return self._auth.client_credentials() if self._auth else None

    @property
    def id_token(self) -> str | None:
        return self._auth.id_token if self._auth else None

    @property
    def refresh_token(self) -> str | None:
        return self._auth.refresh_token if self._auth else None

    # ── Data requests ───────────────────────────────────────────────

    def resolve(self, path: str) -> str:
        """Resolve ``path`` (or an absolute URL) against the base URL."""
        return urljoin(self.base_url, path)

    async def request(
        self,
        method: str,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        content: bytes | None = None,
    ) -> httpx.Response:
        """Send a request through the pipeline and return the raw response.

        Non-2xx statuses are returned, not raised.
        """
        request = self.http.build_request(
            method,
            self.resolve(path),
            headers=dict(headers or {}),
            params=params,
            json=json,
            content=content,
        )
        return await self.http.send(request)

    async def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        """Read ``{resource_type}/{resource_id}`` as JSON.

        Raises
        ------
        SMARTClientError
            The mapped error on any failure; cancellation propagates.
        """
        path = f"{resource_type}/{resource_id}"
        url = self.resolve(path)
        response: httpx.Response | None = None
        try:
            response = await self.request("GET", path, headers={"Accept": FHIR_JSON})
            response.raise_for_status()
            resource = response.json()
            if not isinstance(resource, dict):
                msg = f"Expected a JSON object for {path}"
                raise DecodingError(msg, body=response.content, url=url)
        except Exception as exc:
            raise map_error(exc, url=url, response=response) from exc
        if resource.get("resourceType") not in (None, resource_type):
            logger.warning("Read %s returned a %s resource", path, resource.get("resourceType"))
        return resource

    async def read_patient(self, patient_id: str) -> dict[str, Any]:
        """Read the Patient resource ``patient_id``."""
        return await self.read("Patient", patient_id)

    async def aclose(self) -> None:
        """Close the HTTP clients of the pipeline and the OAuth grants."""
        auths, self._retired_auths = self._retired_auths, []
        for auth in [*auths, self._auth]:
            if auth is not None:
                await auth.aclose()
        await self.http.aclose()

    async def __aenter__(self) -> Server:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
