"""SMART discovery document and its fetch cache.

The document lives at ``{base}/.well-known/smart-configuration``. Once
fetched it is cached until a caller forces a refresh, and concurrent
callers share a single in-flight fetch.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import json
import logging

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import httpx

from pydantic import BaseModel, ConfigDict, ValidationError

from .exceptions import ClientConfigurationError


if TYPE_CHECKING:
    from .httpclient import HTTPClient

logger = logging.getLogger("smartlaunch.discovery")

WELL_KNOWN_PATH = ".well-known/smart-configuration"


def well_known_url(base_url: str) -> str:
    """Discovery URL for a server base URL."""
    return f"{base_url.rstrip('/')}/{WELL_KNOWN_PATH}"


class SMARTConfiguration(BaseModel):
    """Capabilities advertised by a SMART authorization server.

    Members the model does not know are kept in ``model_extra`` and
    re-emitted by :meth:`to_dict`.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    management_endpoint: str | None = None
    introspection_endpoint: str | None = None
    revocation_endpoint: str | None = None
    jwks_uri: str | None = None
    issuer: str | None = None

    grant_types_supported: list[str] | None = None
    response_types_supported: list[str] | None = None
    scopes_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None
    token_endpoint_auth_signing_alg_values_supported: list[str] | None = None
    capabilities: list[str] | None = None
    smart_version: str | None = None
    fhir_version: str | None = None

    @property
    def additional_fields(self) -> dict[str, Any]:
        """Members not modelled explicitly."""
        return dict(self.model_extra or {})

    def supports_pkce_s256(self) -> bool:
        """Whether ``S256`` is among the advertised PKCE methods."""
        methods = self.code_challenge_methods_supported or []
        return any(method.upper() == "S256" for method in methods)

    def to_dict(self) -> dict[str, Any]:
        """Encode back to the wire shape, extras included."""
        return self.model_dump(exclude_none=True)


async def fetch_smart_configuration(http: HTTPClient, base_url: str) -> SMARTConfiguration:
    """GET and decode the discovery document.

    Parameters
    ----------
    http : HTTPClient
        Client used for the request.
    base_url : str
        The server base URL.

    Returns
    -------
    SMARTConfiguration
        The decoded document.

    Raises
    ------
    ClientConfigurationError
        On transport failure, non-2xx status or an undecodable body.
    """
    url = well_known_url(base_url)
    try:
        request = http.build_request("GET", url, headers={"Accept": "application/json"})
        response = await http.send(request)
        response.raise_for_status()
        return SMARTConfiguration.model_validate(response.json())
    except (httpx.HTTPError, json.JSONDecodeError, ValidationError) as exc:
        logger.warning("Discovery failed for %s: %s", url, exc)
        raise ClientConfigurationError(url, exc) from exc


class ConfigurationCache:
    """Memoizes the discovery document with single-flight fetching."""

    def __init__(self) -> None:
        self._cached: SMARTConfiguration | None = None
        self._task: asyncio.Task[SMARTConfiguration] | None = None

    @property
    def cached(self) -> SMARTConfiguration | None:
        """The cached document, if any."""
        return self._cached

    @property
    def is_fetching(self) -> bool:
        """Whether a fetch is in flight."""
        return self._task is not None and not self._task.done()

    async def get(
        self,
        fetch: Callable[[], Awaitable[SMARTConfiguration]],
        force_refresh: bool = False,
    ) -> SMARTConfiguration:
        """Return the document, fetching it at most once concurrently.

        Parameters
        ----------
        fetch : Callable
            Coroutine factory performing the network fetch.
        force_refresh : bool
            Ignore the cache. A fetch already in flight is joined instead
            of starting another.

        Returns
        -------
        SMARTConfiguration
            The cached or freshly fetched document.
        """
        if self._cached is not None and not force_refresh:
            logger.debug("Discovery cache hit")
            return self._cached
        if self._task is not None:
            return await asyncio.shield(self._task)

        task = asyncio.ensure_future(self._run(fetch))
        self._task = task
        return await asyncio.shield(task)

    async def _run(
        self, fetch: Callable[[], Awaitable[SMARTConfiguration]]
    ) -> SMARTConfiguration:
        try:
            configuration = await fetch()
        finally:
            current = self._task is asyncio.current_task()
            if current:
                self._task = None
        if current:
            self._cached = configuration
        return configuration

    def clear(self) -> None:
        """Drop the cached document."""
        self._cached = None
