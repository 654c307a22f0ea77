"""Tests for bearer injection and refresh-on-challenge."""

from __future__ import annotations

import asyncio

from typing import Any

import httpx
import pytest

from smartlaunch.auth.interceptors import (
    AuthRefreshInterceptor,
    BearerInterceptor,
    RefreshCoordinator,
)
from smartlaunch.exceptions import NoAccessTokenError, NoRefreshTokenError, TokenRefreshError
from smartlaunch.httpclient import HTTPClient, RetryInterceptor, RetryPolicy
from tests.fakes import BASE_URL, SleepRecorder


INVALID_TOKEN = 'Bearer realm="fhir", error="invalid_token"'


class _TokenSource:
    """Minimal stand-in for Auth: an access token and a refresh coroutine."""

    def __init__(
        self,
        token: str | None = "stale",
        new_token: str | None = "fresh",
        error: Exception | None = None,
    ) -> None:
        self.access_token = token
        self.new_token = new_token
        self.error = error
        self.refresh_calls = 0

    async def refresh_access_token(self) -> None:
        self.refresh_calls += 1
        await asyncio.sleep(0.01)
        if self.error is not None:
            raise self.error
        self.access_token = self.new_token


def _client(source: Any, handler: Any, *extra: Any) -> HTTPClient:
    return HTTPClient(
        [BearerInterceptor(source), AuthRefreshInterceptor(source), *extra],
        transport=httpx.MockTransport(handler),
    )


def _reject_stale(seen: list[str | None], challenge: str = INVALID_TOKEN):
    """Handler answering 401 invalid_token unless the fresh token is sent."""

    def handler(request: httpx.Request) -> httpx.Response:
        authorization = request.headers.get("Authorization")
        seen.append(authorization)
        if authorization == "Bearer fresh":
            return httpx.Response(200, json={"resourceType": "Patient", "id": "1"})
        return httpx.Response(401, headers={"WWW-Authenticate": challenge})

    return handler


async def _get(http: HTTPClient, path: str = "Patient/1") -> httpx.Response:
    return await http.send(http.build_request("GET", f"{BASE_URL}/{path}"))


# ── Bearer ──────────────────────────────────────────────────────────


class TestBearerInterceptor:
    """Tests for BearerInterceptor."""

    @pytest.mark.asyncio
    async def test_adds_authorization_header(self) -> None:
        """The current access token is sent as a Bearer credential."""
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("Authorization"))
            return httpx.Response(200)

        async with HTTPClient(
            [BearerInterceptor(_TokenSource("abc"))], transport=httpx.MockTransport(handler)
        ) as http:
            await _get(http)
        assert seen == ["Bearer abc"]

    @pytest.mark.asyncio
    async def test_no_token_no_header(self) -> None:
        """Without a token the request is sent unauthenticated."""
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("Authorization"))
            return httpx.Response(200)

        async with HTTPClient(
            [BearerInterceptor(_TokenSource(None)), BearerInterceptor(None)],
            transport=httpx.MockTransport(handler),
        ) as http:
            await _get(http)
        assert seen == [None]


# ── Refresh on challenge ────────────────────────────────────────────


class TestAuthRefreshInterceptor:
    """Tests for AuthRefreshInterceptor."""

    @pytest.mark.asyncio
    async def test_invalid_token_refreshed_and_retried_once(self) -> None:
        """A 401 invalid_token triggers one refresh and one re-send."""
        source = _TokenSource()
        seen: list[str | None] = []
        async with _client(source, _reject_stale(seen)) as http:
            response = await _get(http)

        assert response.status_code == 200
        assert source.refresh_calls == 1
        assert seen == ["Bearer stale", "Bearer fresh"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "challenge", ['Bearer error="INVALID_TOKEN"', 'bearer error="Invalid_Token"']
    )
    async def test_invalid_token_matched_case_insensitively(self, challenge: str) -> None:
        """The error value is compared without regard to case."""
        source = _TokenSource()
        seen: list[str | None] = []
        async with _client(source, _reject_stale(seen, challenge)) as http:
            response = await _get(http)

        assert response.status_code == 200
        assert source.refresh_calls == 1
        assert seen == ["Bearer stale", "Bearer fresh"]

    @pytest.mark.asyncio
    async def test_second_rejection_returned(self) -> None:
        """If the refreshed token is rejected too, the 401 is returned."""
        source = _TokenSource(new_token="also-stale")
        seen: list[str | None] = []
        async with _client(source, _reject_stale(seen)) as http:
            response = await _get(http)

        assert response.status_code == 401
        assert source.refresh_calls == 1
        assert seen == ["Bearer stale", "Bearer also-stale"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "challenge",
        [
            'Bearer error="insufficient_scope"',
            "Bearer",
            'Basic realm="fhir"',
            "",
        ],
    )
    async def test_other_challenges_pass_through(self, challenge: str) -> None:
        """Only Bearer error=invalid_token triggers a refresh."""
        source = _TokenSource()
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            headers = {"WWW-Authenticate": challenge} if challenge else {}
            return httpx.Response(401, headers=headers)

        async with _client(source, handler) as http:
            response = await _get(http)

        assert response.status_code == 401
        assert source.refresh_calls == 0
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_forbidden_not_refreshed(self) -> None:
        """A 403 with an invalid_token challenge is not a refresh trigger."""
        source = _TokenSource()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, headers={"WWW-Authenticate": INVALID_TOKEN})

        async with _client(source, handler) as http:
            response = await _get(http)
        assert response.status_code == 403
        assert source.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_refresh_failure_wrapped(self) -> None:
        """A failing refresh surfaces as TokenRefreshError chained from the cause."""
        cause = RuntimeError("token endpoint down")
        source = _TokenSource(error=cause)
        async with _client(source, _reject_stale([])) as http:
            with pytest.raises(TokenRefreshError) as exc_info:
                await _get(http)
        assert exc_info.value.__cause__ is cause

    @pytest.mark.asyncio
    async def test_refresh_error_not_rewrapped(self) -> None:
        """TokenRefreshError subclasses propagate unchanged."""
        source = _TokenSource(error=NoRefreshTokenError())
        async with _client(source, _reject_stale([])) as http:
            with pytest.raises(NoRefreshTokenError):
                await _get(http)

    @pytest.mark.asyncio
    async def test_refresh_without_token(self) -> None:
        """A refresh leaving no access token raises NoAccessTokenError."""
        source = _TokenSource(new_token=None)
        async with _client(source, _reject_stale([])) as http:
            with pytest.raises(NoAccessTokenError):
                await _get(http)

    @pytest.mark.asyncio
    async def test_concurrent_rejections_share_one_refresh(self) -> None:
        """Concurrent invalid_token responses trigger exactly one refresh."""
        source = _TokenSource()
        seen: list[str | None] = []
        async with _client(source, _reject_stale(seen)) as http:
            responses = await asyncio.gather(*(_get(http) for _ in range(5)))

        assert [r.status_code for r in responses] == [200] * 5
        assert source.refresh_calls == 1
        assert seen.count("Bearer fresh") == 5

    @pytest.mark.asyncio
    async def test_retry_stage_runs_inside_refresh(self) -> None:
        """Transient failures are retried before the refresh stage sees the response."""
        source = _TokenSource()
        sleep = SleepRecorder()
        outcomes = iter(
            [
                httpx.Response(503),
                httpx.Response(401, headers={"WWW-Authenticate": INVALID_TOKEN}),
                httpx.Response(200),
            ]
        )
        async with _client(
            source,
            lambda request: next(outcomes),
            RetryInterceptor(RetryPolicy(max_retries=1, base_delay=0.2), sleep),
        ) as http:
            response = await _get(http)

        assert response.status_code == 200
        assert source.refresh_calls == 1
        assert sleep.delays == [0.2]

    @pytest.mark.asyncio
    async def test_without_auth_passes_through(self) -> None:
        """Without an auth source responses are returned untouched."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, headers={"WWW-Authenticate": INVALID_TOKEN})

        async with HTTPClient(
            [AuthRefreshInterceptor()], transport=httpx.MockTransport(handler)
        ) as http:
            response = await _get(http)
        assert response.status_code == 401


# ── RefreshCoordinator ──────────────────────────────────────────────


class TestRefreshCoordinator:
    """Tests for the single-flight refresh coordinator."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_task(self) -> None:
        """Callers arriving during a refresh join it."""
        calls = 0

        async def action() -> None:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)

        coordinator = RefreshCoordinator(action)
        await asyncio.gather(*(coordinator.refresh() for _ in range(10)))
        assert calls == 1
        assert not coordinator.is_refreshing

    @pytest.mark.asyncio
    async def test_new_refresh_after_completion(self) -> None:
        """Once a refresh finishes the next call starts a new one."""
        calls = 0

        async def action() -> None:
            nonlocal calls
            calls += 1

        coordinator = RefreshCoordinator(action)
        await coordinator.refresh()
        await coordinator.refresh()
        assert calls == 2

    @pytest.mark.asyncio
    async def test_failure_shared_and_cleared(self) -> None:
        """All waiters see the failure; the next call retries."""
        attempts = 0

        async def action() -> None:
            nonlocal attempts
            attempts += 1
            await asyncio.sleep(0)
            if attempts == 1:
                raise RuntimeError("boom")

        coordinator = RefreshCoordinator(action)
        results = await asyncio.gather(
            coordinator.refresh(), coordinator.refresh(), return_exceptions=True
        )
        assert all(isinstance(r, RuntimeError) for r in results)
        await coordinator.refresh()
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_waiter_cancellation_keeps_refresh_running(self) -> None:
        """Cancelling one waiter does not cancel the shared refresh."""
        finished = asyncio.Event()

        async def action() -> None:
            await asyncio.sleep(0.01)
            finished.set()

        coordinator = RefreshCoordinator(action)
        first = asyncio.ensure_future(coordinator.refresh())
        second = asyncio.ensure_future(coordinator.refresh())
        await asyncio.sleep(0)
        first.cancel()
        await second
        assert finished.is_set()
        with pytest.raises(asyncio.CancelledError):
            await first

    @pytest.mark.asyncio
    async def test_without_action(self) -> None:
        """Refreshing without an action raises TokenRefreshError."""
        with pytest.raises(TokenRefreshError):
            await RefreshCoordinator().refresh()
