"""Tests for the public Client API."""

from __future__ import annotations

import asyncio
import logging

from typing import Any
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from smartlaunch.client import Client
from smartlaunch.config import SmartLaunchSettings
from smartlaunch.exceptions import (
    ClientCancelledError,
    ClientConfigurationError,
    ClientDecodingError,
    ClientHTTPError,
    ClientNetworkError,
    ClientOAuthError,
    ClientRateLimitedError,
    ConfigurationError,
    InvalidIssuerError,
)
from smartlaunch.types import AuthGranularity, AuthProperties
from tests.fakes import (
    BASE_URL,
    REDIRECT_URI,
    TOKEN_URL,
    MockAuthUIHandler,
    SleepRecorder,
    redirect_for,
    smart_configuration,
    wait_until,
)


PATIENT = {"resourceType": "Patient", "id": "123"}
SETTINGS = {"client_id": "my-app", "redirect": REDIRECT_URI}


def _router(
    data: dict[str, list[httpx.Response]] | None = None,
    configuration: dict[str, Any] | None = None,
    token_response: httpx.Response | None = None,
):
    """Handler serving discovery and token, and scripted data responses by path."""
    scripted = data or {}

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url == f"{BASE_URL}/.well-known/smart-configuration":
            return httpx.Response(200, json=configuration or smart_configuration())
        if url == TOKEN_URL:
            return token_response or httpx.Response(
                200, json={"access_token": "at", "expires_in": 3600, "patient": "123"}
            )
        path = url[len(BASE_URL) + 1 :]
        if scripted.get(path):
            return scripted[path].pop(0)
        if path == "Patient/123":
            return httpx.Response(200, json=PATIENT)
        return httpx.Response(404)

    return handler


def _client(handler, ui: MockAuthUIHandler | None = None, **kwargs: Any) -> Client:
    return Client.create(
        BASE_URL,
        SETTINGS,
        ui_handler=ui or MockAuthUIHandler(),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


# ── Construction ────────────────────────────────────────────────────


class TestCreate:
    """Tests for Client construction."""

    def test_create_derives_registration_fields(self) -> None:
        """redirect_uris comes from redirect and title defaults to SMART."""
        client = Client.create(BASE_URL, SETTINGS)
        settings = client.server.auth_settings
        assert settings.redirect_uris == [REDIRECT_URI]
        assert settings.title == "SMART"
        assert client.auth_properties == AuthProperties()

    def test_create_keeps_title(self) -> None:
        """An explicit title is kept."""
        client = Client.create(BASE_URL, {**SETTINGS, "title": "My App"})
        assert client.server.auth_settings.title == "My App"

    def test_from_settings(self) -> None:
        """Layered settings configure server, retry policy and OAuth2."""
        settings = SmartLaunchSettings(
            base_url=BASE_URL,
            retry={"max_retries": 4},
            oauth2={"client_id": "cfg-app", "redirect": REDIRECT_URI},
        )
        client = Client.from_settings(settings)
        assert client.server.aud == BASE_URL
        assert client.server.retry_policy.max_retries == 4
        assert client.server.auth_settings.client_id == "cfg-app"

    def test_from_settings_overrides(self) -> None:
        """Keyword arguments override configured server options."""
        settings = SmartLaunchSettings(base_url=BASE_URL, https_auth_base="https://a.example.org")
        client = Client.from_settings(settings, https_auth_base=None)
        assert client.server.https_auth_base is None

    def test_from_settings_requires_base_url(self) -> None:
        """A missing base_url is a configuration error."""
        with pytest.raises(ConfigurationError, match="No base_url"):
            Client.from_settings(SmartLaunchSettings())


# ── ready() and authorize() ─────────────────────────────────────────


class TestAuthorize:
    """Tests for Client.ready() and Client.authorize()."""

    @pytest.mark.asyncio
    async def test_ready_discovery_failure(self) -> None:
        """A failing discovery fetch is a configuration error."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        async with _client(handler) as client:
            with pytest.raises(ClientConfigurationError):
                await client.ready()

    @pytest.mark.asyncio
    async def test_ready_without_pkce(self) -> None:
        """Missing PKCE support is reported as a configuration error."""
        handler = _router(configuration=smart_configuration(code_challenge_methods_supported=[]))
        async with _client(handler) as client:
            with pytest.raises(ClientConfigurationError) as exc_info:
                await client.ready()
        assert isinstance(exc_info.value.underlying, ConfigurationError)
        assert exc_info.value.url == f"{BASE_URL}/"

    @pytest.mark.asyncio
    async def test_authorize_returns_patient(self) -> None:
        """authorize() returns the patient in context."""
        async with _client(_router()) as client:
            assert await client.authorize() == PATIENT

    @pytest.mark.asyncio
    async def test_token_error_mapped(self) -> None:
        """A rejected code exchange surfaces as an OAuth error."""
        handler = _router(token_response=httpx.Response(400, json={"error": "invalid_grant"}))
        async with _client(handler) as client:
            with pytest.raises(ClientOAuthError) as exc_info:
                await client.authorize()
        assert exc_info.value.token_endpoint == TOKEN_URL

    @pytest.mark.asyncio
    async def test_browser_flow(self) -> None:
        """Browser mode opens the URL and completes through did_redirect()."""
        opened: list[str] = []
        async with _client(_router()) as client:
            client.auth_properties = AuthProperties(embedded=False)
            with patch(
                "smartlaunch.auth.oauth2.webbrowser.open",
                side_effect=lambda url: opened.append(url) or True,
            ):
                task = asyncio.create_task(client.authorize())
                await wait_until(lambda: bool(opened))

            assert client.awaiting_auth_callback
            assert not await client.did_redirect("https://elsewhere.example.org/cb?code=x")
            assert await client.did_redirect(redirect_for(opened[0]))
            assert await task == PATIENT
            assert not client.awaiting_auth_callback

    @pytest.mark.asyncio
    async def test_abort_browser_flow(self) -> None:
        """abort() ends a waiting authorize call with a cancellation error."""
        opened: list[str] = []
        async with _client(_router()) as client:
            client.auth_properties = AuthProperties(embedded=False)
            with patch(
                "smartlaunch.auth.oauth2.webbrowser.open",
                side_effect=lambda url: opened.append(url) or True,
            ):
                task = asyncio.create_task(client.authorize())
                await wait_until(lambda: bool(opened))

            client.abort()
            with pytest.raises(ClientCancelledError):
                await task
            assert not client.awaiting_auth_callback

    @pytest.mark.asyncio
    async def test_did_redirect_without_auth(self) -> None:
        """Before ready() there is nothing to forward redirects to."""
        async with Client.create(BASE_URL, {"client_id": "a"}) as client:
            assert not await client.did_redirect(f"{REDIRECT_URI}?code=x")
            assert not client.awaiting_auth_callback

    @pytest.mark.asyncio
    async def test_reset_drops_tokens(self) -> None:
        """reset() forgets tokens so the next authorize presents again."""
        ui = MockAuthUIHandler()
        async with _client(_router(), ui) as client:
            await client.authorize()
            await client.authorize()
            assert len(ui.presented) == 1

            client.reset()
            assert client.server.auth.access_token is None
            await client.authorize()
            assert len(ui.presented) == 2

    @pytest.mark.asyncio
    async def test_forget_client_registration(self) -> None:
        """forget_client_registration() drops the engine."""
        async with _client(_router()) as client:
            await client.ready()
            client.forget_client_registration()
            assert client.server.auth is None


# ── EHR launch ──────────────────────────────────────────────────────


class TestEHRLaunch:
    """Tests for Client.handle_ehr_launch()."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("iss", ["not a url", "/relative/path", ""])
    async def test_invalid_issuer(self, iss: str) -> None:
        """A non-absolute iss is a configuration error."""
        async with _client(_router()) as client:
            with pytest.raises(ClientConfigurationError) as exc_info:
                await client.handle_ehr_launch(iss, "launch-1")
        assert isinstance(exc_info.value.underlying, InvalidIssuerError)

    @pytest.mark.asyncio
    async def test_launch_parameter_sent(self) -> None:
        """The launch parameter is sent once and launch scope requested."""
        ui = MockAuthUIHandler()
        client = _client(_router(), ui)
        client.auth_properties = AuthProperties(granularity=AuthGranularity.TOKEN_ONLY)
        async with client:
            await client.handle_ehr_launch(BASE_URL, "launch-xyz")
            assert client.auth_properties.granularity is AuthGranularity.LAUNCH_CONTEXT

            await client.authorize()
            assert client.server.auth.launch_parameter is None

        query = parse_qs(urlparse(ui.presented[0]).query)
        assert query["launch"] == ["launch-xyz"]
        assert "launch" in query["scope"][0].split()

    @pytest.mark.asyncio
    async def test_issuer_mismatch_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        """A different issuer is logged but accepted."""
        async with _client(_router()) as client:
            with caplog.at_level(logging.WARNING, logger="smartlaunch"):
                await client.handle_ehr_launch("https://other.example.org/fhir", "l")
        assert "does not match" in caplog.text

    @pytest.mark.asyncio
    async def test_additional_settings_merged(self) -> None:
        """Additional settings are merged before ready()."""
        async with _client(_router()) as client:
            await client.handle_ehr_launch(f"{BASE_URL}/", "l", {"scope": "patient/*.rs"})
            assert client.server.auth_settings.scope == "patient/*.rs"
            assert client.server.auth_settings.client_id == "my-app"


# ── Data requests ───────────────────────────────────────────────────


class TestRequests:
    """Tests for get_json() and get_data()."""

    @pytest.mark.asyncio
    async def test_get_json(self) -> None:
        """A successful response is decoded."""
        async with _client(_router()) as client:
            assert await client.get_json("Patient/123") == PATIENT

    @pytest.mark.asyncio
    async def test_operation_outcome(self) -> None:
        """A 404 carries the OperationOutcome diagnostics."""
        outcome = {
            "resourceType": "OperationOutcome",
            "issue": [{"severity": "error", "code": "not-found", "diagnostics": "Unknown id"}],
        }
        handler = _router({"Patient/9": [httpx.Response(404, json=outcome)]})
        async with _client(handler) as client:
            with pytest.raises(ClientHTTPError) as exc_info:
                await client.get_json("Patient/9")
        assert exc_info.value.status == 404
        assert exc_info.value.outcome == outcome
        assert "Unknown id" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_rate_limited_after_retry_after(self) -> None:
        """One Retry-After wait is honored, then the 429 is reported."""
        limited = [httpx.Response(429, headers={"Retry-After": "2"}) for _ in range(2)]
        sleep = SleepRecorder()
        async with _client(_router({"Patient/1": limited}), sleep=sleep) as client:
            with pytest.raises(ClientRateLimitedError) as exc_info:
                await client.get_json("Patient/1")
        assert sleep.delays == [2.0]
        assert exc_info.value.retry_after is not None

    @pytest.mark.asyncio
    async def test_invalid_json(self) -> None:
        """A non-JSON body is a decoding error."""
        handler = _router({"Patient/1": [httpx.Response(200, content=b"<html>")]})
        async with _client(handler) as client:
            with pytest.raises(ClientDecodingError) as exc_info:
                await client.get_json("Patient/1")
        assert exc_info.value.body_snippet == "<html>"

    @pytest.mark.asyncio
    async def test_network_failure(self) -> None:
        """Transport failures are network errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(ClientNetworkError):
                await client.get_json("Patient/1")

    @pytest.mark.asyncio
    async def test_get_data_accept_header(self) -> None:
        """get_data() sends the given Accept header and returns the response."""
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Accept"])
            return httpx.Response(200, content=b"%PDF")

        async with _client(handler) as client:
            response = await client.get_data("https://files.example.org/doc.pdf", "application/pdf")
        assert response.content == b"%PDF"
        assert seen == ["application/pdf"]
