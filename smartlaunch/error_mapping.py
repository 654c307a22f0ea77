"""Reconcile errors from the transport, the data API and OAuth into one shape.

:func:`map_error` is applied once, where an error leaves the public
:class:`~smartlaunch.client.Client` / :class:`~smartlaunch.server.Server`
API. Cancellation is recognized before any other classification.
"""

from __future__ import annotations

import asyncio
import json

from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from pydantic import ValidationError

from .exceptions import (
    AuthenticationError,
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
    SMARTClientError,
)
from .httpclient.retry import parse_retry_after


BODY_SNIPPET_LIMIT = 512

_MAX_CAUSE_DEPTH = 8


def is_cancellation(error: BaseException) -> bool:
    """Whether ``error`` or anything it was raised from is a cancellation.

    Covers asyncio cancellation, a cancelled authorization flow, and
    transport errors raised while the request task was being cancelled.
    """
    current: BaseException | None = error
    for _ in range(_MAX_CAUSE_DEPTH):
        if current is None:
            return False
        if isinstance(current, (asyncio.CancelledError, AuthFlowCancelled)):
            return True
        if isinstance(current, ClientCancelledError):
            return True
        current = current.__cause__ or current.__context__
    return False


def body_snippet(body: bytes | str | None) -> str | None:
    """First 512 bytes of ``body``, with an ellipsis when truncated."""
    if body is None:
        return None
    data = body.encode("utf-8") if isinstance(body, str) else body
    snippet = data[:BODY_SNIPPET_LIMIT].decode("utf-8", errors="replace")
    if len(data) > BODY_SNIPPET_LIMIT:
        snippet += "…"
    return snippet


def decode_operation_outcome(body: bytes | None) -> dict[str, Any] | None:
    """Best-effort decode of a FHIR ``OperationOutcome`` body."""
    if not body:
        return None
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if isinstance(data, dict) and data.get("resourceType") == "OperationOutcome":
        return data
    return None


def _retry_after_date(headers: httpx.Headers) -> datetime | None:
    seconds = parse_retry_after(headers.get("Retry-After"))
    if seconds is None:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=max(seconds, 0.0))


def _decoding_body(error: BaseException, body: bytes | None) -> bytes | str | None:
    if body is not None:
        return body
    if isinstance(error, DecodingError):
        return error.body
    if isinstance(error, json.JSONDecodeError):
        return error.doc
    return None


def map_error(
    error: BaseException,
    url: str | None = None,
    response: httpx.Response | None = None,
    body: bytes | None = None,
) -> SMARTClientError:
    """Classify ``error`` into exactly one :class:`SMARTClientError`.

    Parameters
    ----------
    error : BaseException
        The error to classify.
    url : str, optional
        The URL involved (request URL, or token endpoint for OAuth errors).
    response : httpx.Response, optional
        The response that accompanied the error, if any.
    body : bytes, optional
        The response body, when already read.

    Returns
    -------
    SMARTClientError
        The unified error; ``error`` itself when it already is one.
    """
    if isinstance(error, SMARTClientError):
        return error

    if is_cancellation(error):
        return ClientCancelledError(underlying=error)

    if isinstance(error, httpx.HTTPStatusError):
        response = response or error.response
        target = url or str(error.request.url)
        if response.status_code == 429:
            return ClientRateLimitedError(
                target, retry_after=_retry_after_date(response.headers), underlying=error
            )
        content = body if body is not None else response.content
        return ClientHTTPError(
            status=response.status_code,
            url=target,
            headers=dict(response.headers),
            outcome=decode_operation_outcome(content),
            underlying=error,
        )

    if isinstance(error, (DecodingError, json.JSONDecodeError, ValidationError)):
        target = url or (error.url if isinstance(error, DecodingError) else None)
        if target is None and response is not None:
            target = str(response.request.url)
        if body is None and response is not None:
            body = response.content
        return ClientDecodingError(
            error, url=target, body_snippet=body_snippet(_decoding_body(error, body))
        )

    if isinstance(error, ConfigurationError):
        return ClientConfigurationError(url or "", error)

    if isinstance(error, AuthenticationError):
        return ClientOAuthError(error, token_endpoint=error.context.get("token_endpoint") or url)

    if isinstance(error, httpx.TransportError):
        return ClientNetworkError(error)

    return ClientOtherError(error)
