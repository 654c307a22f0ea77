"""Public entry point of smartlaunch.

Create a :class:`Client`, then keep it around for every interaction with
the SMART server::

    client = Client.create(
        "https://launch.smarthealthit.org/v/r4/fhir",
        {"client_id": "my_app", "redirect": "http://127.0.0.1:8765/callback"},
        ui_handler=LoopbackAuthUIHandler(),
    )
    patient = await client.authorize()

Every error leaving a method of :class:`Client` is a
:class:`~smartlaunch.exceptions.SMARTClientError`; task cancellation
propagates unchanged.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from collections.abc import Mapping
from typing import Any

import httpx

from .config import OAuth2Settings, SmartLaunchSettings, get_settings
from .error_mapping import map_error
from .exceptions import (
    ConfigurationError,
    InvalidIssuerError,
    MissingAuthorizationError,
)
from .server import Server
from .types import AuthGranularity, AuthProperties


logger = logging.getLogger("smartlaunch")


class Client:
    """Handles authorization against and requests to one SMART server.

    Parameters
    ----------
    server : Server
        The server this client talks to.
    auth_properties : AuthProperties, optional
        Properties used by :meth:`authorize`.
    """

    def __init__(self, server: Server, auth_properties: AuthProperties | None = None) -> None:
        self.server = server
        self.auth_properties = auth_properties or AuthProperties()
        logger.debug("Initialized SMART client against server %s", server.base_url)

    @classmethod
    def create(
        cls,
        base_url: str,
        settings: OAuth2Settings | Mapping[str, Any] | None = None,
        **server_options: Any,
    ) -> Client:
        """Build a client and its server from OAuth2 client settings.

        ``redirect_uris`` is derived from ``redirect`` and ``title``
        defaults to ``"SMART"``.

        Parameters
        ----------
        base_url : str
            The FHIR server base URL.
        settings : OAuth2Settings or Mapping, optional
            Client settings (``client_id``, ``redirect``, ``scope``, ...).
        **server_options : Any
            Forwarded to :class:`Server`.
        """
        if isinstance(settings, OAuth2Settings):
            data = settings.to_dict()
        else:
            data = dict(settings or {})
        if data.get("redirect"):
            data["redirect_uris"] = [data["redirect"]]
        data.setdefault("title", "SMART")
        return cls(Server(base_url, auth=data, **server_options))

    @classmethod
    def from_settings(
        cls, settings: SmartLaunchSettings | None = None, **server_options: Any
    ) -> Client:
        """Build a client from layered configuration.

        Parameters
        ----------
        settings : SmartLaunchSettings, optional
            Defaults to :func:`~smartlaunch.config.get_settings`.
        **server_options : Any
            Forwarded to :class:`Server`, overriding configured values.

        Raises
        ------
        ConfigurationError
            If no ``base_url`` is configured.
        """
        settings = settings or get_settings()
        settings.log.apply()
        if not settings.base_url:
            msg = "No base_url configured (set SMARTLAUNCH_BASE_URL or [tool.smartlaunch])"
            raise ConfigurationError(msg)
        options: dict[str, Any] = {
            "retry_policy": settings.retry.to_policy(),
            "allow_insecure_connections": settings.allow_insecure_connections,
            "https_auth_base": settings.https_auth_base,
            "timeout": settings.request_timeout,
        }
        options.update(server_options)
        return cls.create(settings.base_url, settings.oauth2, **options)

    # ── Authorization ───────────────────────────────────────────────

    async def ready(self) -> None:
        """Run discovery and set up authorization."""
        try:
            await self.server.ready()
        except Exception as exc:
            raise map_error(exc, url=self.server.base_url) from exc

    async def authorize(self) -> dict[str, Any] | None:
        """Authorize, calling :meth:`ready` first.

        In browser mode (``auth_properties.embedded = False``) the
        redirect must be forwarded through :meth:`did_redirect`.

        Returns
        -------
        dict or None
            The Patient resource in context, if any.
        """
        self.server.must_abort_authorization = False
        try:
            return await self.server.authorize(self.auth_properties)
        except Exception as exc:
            raise map_error(exc, url=self._token_endpoint()) from exc

    async def handle_ehr_launch(
        self,
        iss: str,
        launch: str,
        additional_settings: OAuth2Settings | Mapping[str, Any] | None = None,
    ) -> None:
        """Prepare an EHR launch with the ``iss`` and ``launch`` parameters.

        Afterwards call :meth:`authorize`; token-only granularity is
        upgraded to launch context.
        """
        try:
            issuer = httpx.URL(iss)
            if not issuer.scheme or not issuer.host:
                raise InvalidIssuerError(iss)
            if iss.rstrip("/") != self.server.base_url.rstrip("/"):
                logger.warning(
                    "EHR launch issuer %s does not match client server URL %s",
                    iss,
                    self.server.base_url,
                )
            if additional_settings is not None:
                self.server.merge_auth_settings(additional_settings)
            await self.server.ready()
            auth = self.server.auth
            if auth is None:
                raise MissingAuthorizationError
        except httpx.InvalidURL as exc:
            raise map_error(InvalidIssuerError(iss), url=iss) from exc
        except Exception as exc:
            raise map_error(exc, url=iss) from exc

        auth.set_launch_parameter(launch)
        if self.auth_properties.granularity is AuthGranularity.TOKEN_ONLY:
            self.auth_properties.granularity = AuthGranularity.LAUNCH_CONTEXT

    @property
    def awaiting_auth_callback(self) -> bool:
        """Whether an authorization waits for its redirect."""
        auth = self.server.auth
        return auth.is_awaiting_authorization() if auth else False

    async def did_redirect(self, url: str) -> bool:
        """Forward a redirect URL intercepted by the application.

        Returns
        -------
        bool
            Whether the URL was a redirect for the pending authorization.
        """
        auth = self.server.auth
        return await auth.handle_redirect(url) if auth else False

    def abort(self) -> None:
        """Abort a pending authorization."""
        self.server.abort()

    def reset(self) -> None:
        """Reset authorization state and drop tokens."""
        self.server.reset()

    def forget_client_registration(self) -> None:
        """Throw away local client registration data."""
        self.server.forget_client_registration()

    def _token_endpoint(self) -> str | None:
        settings = self.server.auth_settings
        return settings.token_uri if settings else None

    # ── Requests ────────────────────────────────────────────────────

    async def get_json(self, path: str) -> Any:
        """GET ``path`` relative to the base URL and decode the JSON body."""
        response = await self._get(path, "application/json")
        try:
            return response.json()
        except ValueError as exc:
            raise map_error(exc, url=str(response.url), response=response) from exc

    async def get_data(self, url: str, accept: str) -> httpx.Response:
        """GET an absolute or base-relative ``url`` with the given ``Accept``.

        Returns
        -------
        httpx.Response
            The successful response, body already read.
        """
        return await self._get(url, accept)

    async def _get(self, path: str, accept: str) -> httpx.Response:
        url = self.server.resolve(path)
        response: httpx.Response | None = None
        try:
            response = await self.server.request("GET", path, headers={"Accept": accept})
            response.raise_for_status()
        except Exception as exc:
            raise map_error(exc, url=url, response=response) from exc
        return response

    async def aclose(self) -> None:
        await self.server.aclose()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
