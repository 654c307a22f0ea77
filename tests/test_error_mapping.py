"""Tests for classifying errors into the unified client error."""

from __future__ import annotations

import asyncio
import json

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from pydantic import ValidationError

from smartlaunch.discovery import SMARTConfiguration
from smartlaunch.error_mapping import (
    BODY_SNIPPET_LIMIT,
    body_snippet,
    decode_operation_outcome,
    is_cancellation,
    map_error,
)
from smartlaunch.exceptions import (
    AuthFlowCancelled,
    ClientCancelledError,
    ClientConfigurationError,
    ClientDecodingError,
    ClientHTTPError,
    ClientNetworkError,
    ClientOAuthError,
    ClientOtherError,
    ClientRateLimitedError,
    ConfigurationError,
    DecodingError,
    ErrorKind,
    InvalidIssuerError,
    TokenError,
)
from tests.fakes import BASE_URL, TOKEN_URL


PATIENT_URL = f"{BASE_URL}/Patient/123"


def _status_error(status: int, **kwargs) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", PATIENT_URL)
    response = httpx.Response(status, request=request, **kwargs)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


# ── Cancellation ────────────────────────────────────────────────────


class TestCancellation:
    """Cancellation wins over every other classification."""

    @pytest.mark.parametrize(
        "error",
        [asyncio.CancelledError(), AuthFlowCancelled("closed")],
        ids=["asyncio", "auth-flow"],
    )
    def test_direct(self, error: BaseException) -> None:
        """Cancellation errors map to the cancelled tag."""
        mapped = map_error(error)
        assert isinstance(mapped, ClientCancelledError)
        assert mapped.underlying is error

    def test_cancelled_cause_beats_http_status(self) -> None:
        """An HTTP error raised from a cancellation is still a cancellation."""
        error = _status_error(500)
        error.__cause__ = asyncio.CancelledError()
        assert isinstance(map_error(error), ClientCancelledError)

    def test_cancelled_context_beats_transport(self) -> None:
        """A transport error raised while handling a cancellation is a cancellation."""
        error = httpx.ReadError("aborted")
        error.__context__ = asyncio.CancelledError()
        assert is_cancellation(error)
        assert isinstance(map_error(error), ClientCancelledError)

    def test_plain_error_is_not_cancellation(self) -> None:
        """Errors without a cancellation in their chain are not cancellations."""
        error = ValueError("x")
        error.__cause__ = KeyError("y")
        assert not is_cancellation(error)


# ── HTTP status ─────────────────────────────────────────────────────


class TestHTTPStatus:
    """Tests for status errors from the data API."""

    def test_operation_outcome(self) -> None:
        """A 404 with an OperationOutcome carries its diagnostics."""
        outcome = {
            "resourceType": "OperationOutcome",
            "issue": [{"severity": "error", "code": "not-found", "diagnostics": "No such patient"}],
        }
        mapped = map_error(_status_error(404, json=outcome, headers={"X-Trace": "t1"}))

        assert isinstance(mapped, ClientHTTPError)
        assert mapped.status == 404
        assert mapped.url == PATIENT_URL
        assert mapped.outcome == outcome
        assert mapped.headers["x-trace"] == "t1"
        assert "No such patient" in str(mapped)

    def test_details_text_fallback(self) -> None:
        """details.text is used when diagnostics are absent."""
        outcome = {"resourceType": "OperationOutcome", "issue": [{"details": {"text": "Gone"}}]}
        assert "Gone" in str(map_error(_status_error(410, json=outcome)))

    def test_non_outcome_body(self) -> None:
        """A body that is not an OperationOutcome leaves outcome unset."""
        mapped = map_error(_status_error(500, content=b"<html>oops</html>"))
        assert isinstance(mapped, ClientHTTPError)
        assert mapped.outcome is None

    def test_rate_limited(self) -> None:
        """429 maps to the rate-limited tag with the Retry-After date."""
        before = datetime.now(timezone.utc)
        mapped = map_error(_status_error(429, headers={"Retry-After": "120"}))

        assert isinstance(mapped, ClientRateLimitedError)
        assert mapped.url == PATIENT_URL
        assert mapped.retry_after is not None
        assert before + timedelta(seconds=119) <= mapped.retry_after
        assert mapped.retry_after <= datetime.now(timezone.utc) + timedelta(seconds=121)

    def test_rate_limited_without_header(self) -> None:
        """429 without Retry-After has no retry date."""
        mapped = map_error(_status_error(429))
        assert isinstance(mapped, ClientRateLimitedError)
        assert mapped.retry_after is None


# ── Decoding ────────────────────────────────────────────────────────


class TestDecoding:
    """Tests for decode failures."""

    def test_json_error_snippet_truncated(self) -> None:
        """Long bodies are cut to the snippet limit with an ellipsis."""
        doc = "x" * (BODY_SNIPPET_LIMIT + 100)
        mapped = map_error(json.JSONDecodeError("Expecting value", doc, 0), url=PATIENT_URL)

        assert isinstance(mapped, ClientDecodingError)
        assert mapped.url == PATIENT_URL
        assert mapped.body_snippet == "x" * BODY_SNIPPET_LIMIT + "…"

    def test_short_body_not_truncated(self) -> None:
        """Short bodies are reported whole."""
        mapped = map_error(DecodingError("bad", body=b"<html>", url=PATIENT_URL))
        assert isinstance(mapped, ClientDecodingError)
        assert mapped.body_snippet == "<html>"
        assert mapped.url == PATIENT_URL

    def test_validation_error(self) -> None:
        """A pydantic validation failure is a decoding error."""
        with pytest.raises(ValidationError) as exc_info:
            SMARTConfiguration.model_validate({})
        mapped = map_error(exc_info.value, body=b"{}")
        assert isinstance(mapped, ClientDecodingError)
        assert mapped.body_snippet == "{}"

    def test_body_snippet_helper(self) -> None:
        """body_snippet() handles None, str and bytes."""
        assert body_snippet(None) is None
        assert body_snippet("abc") == "abc"
        assert body_snippet(b"\xff") == "�"

    def test_decode_operation_outcome(self) -> None:
        """Only OperationOutcome documents are returned."""
        assert decode_operation_outcome(b'{"resourceType": "Patient"}') is None
        assert decode_operation_outcome(b"not json") is None
        assert decode_operation_outcome(None) is None
        assert decode_operation_outcome(b'{"resourceType": "OperationOutcome"}') == {
            "resourceType": "OperationOutcome"
        }


# ── Remaining tags ──────────────────────────────────────────────────


class TestOtherTags:
    """Tests for configuration, OAuth, network and fallback errors."""

    def test_configuration(self) -> None:
        """Configuration errors keep the URL they concern."""
        error = InvalidIssuerError("not a url")
        mapped = map_error(error, url="not a url")
        assert isinstance(mapped, ClientConfigurationError)
        assert mapped.underlying is error
        assert mapped.url == "not a url"

    def test_oauth_uses_token_endpoint_context(self) -> None:
        """OAuth errors report the token endpoint they failed against."""
        error = TokenError("rejected", token_endpoint=TOKEN_URL)
        mapped = map_error(error)
        assert isinstance(mapped, ClientOAuthError)
        assert mapped.token_endpoint == TOKEN_URL

    def test_oauth_falls_back_to_url(self) -> None:
        """Without context, the given URL is used."""
        mapped = map_error(TokenError("rejected"), url=TOKEN_URL)
        assert isinstance(mapped, ClientOAuthError)
        assert mapped.token_endpoint == TOKEN_URL

    def test_network(self) -> None:
        """Transport errors map to the network tag."""
        request = httpx.Request("GET", PATIENT_URL)
        mapped = map_error(httpx.ConnectError("refused", request=request))
        assert isinstance(mapped, ClientNetworkError)
        assert "refused" in str(mapped)

    def test_other(self) -> None:
        """Anything unrecognized maps to the fallback tag."""
        mapped = map_error(RuntimeError("boom"))
        assert isinstance(mapped, ClientOtherError)
        assert mapped.kind is ErrorKind.OTHER

    def test_already_mapped_passes_through(self) -> None:
        """A unified error is returned unchanged."""
        error = ClientNetworkError(OSError("x"))
        assert map_error(error) is error

    def test_plain_configuration_error(self) -> None:
        """ConfigurationError without URL maps with an empty URL."""
        mapped = map_error(ConfigurationError("PKCE unsupported"))
        assert isinstance(mapped, ClientConfigurationError)
        assert mapped.url == ""
