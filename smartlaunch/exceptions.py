"""smartlaunch exception hierarchy.

All smartlaunch-specific exceptions inherit from SmartLaunchException, enabling
catch-all handling while supporting specific error types.

Errors raised inside the library (OAuth exchange, token refresh, configuration)
are reconciled into the ``SMARTClientError`` family by
:func:`smartlaunch.error_mapping.map_error` before they reach a caller of
:class:`smartlaunch.client.Client`.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar


class SmartLaunchException(Exception):
    """Base exception for all smartlaunch errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize smartlaunch exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (url, status, flow_id, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items() if v is not None)
            if ctx:
                return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(SmartLaunchException):
    """The server or client configuration is unusable.

    Raised by ``ready()`` when discovery does not advertise PKCE S256,
    when no authorization method can be inferred, or when a redirect
    URI is missing.
    """


class MissingAuthorizationError(SmartLaunchException):
    """No OAuth2 instance has been configured for the server yet."""

    def __init__(self, message: str = "Client error, no authorization instance created") -> None:
        super().__init__(message)


class InvalidIssuerError(ConfigurationError):
    """The ``iss`` parameter of an EHR launch is not a usable URL."""

    def __init__(self, issuer: str) -> None:
        super().__init__(f"Invalid SMART issuer: {issuer}", issuer=issuer)
        self.issuer = issuer


class DecodingError(SmartLaunchException):
    """A response body could not be decoded into the expected shape.

    Parameters
    ----------
    message : str
        Human-readable error message.
    body : bytes, optional
        The offending response body.
    url : str, optional
        The URL whose response failed to decode.
    """

    def __init__(
        self,
        message: str,
        body: bytes | None = None,
        url: str | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, url=url, **context)
        self.body = body
        self.url = url


# ── Authentication ──────────────────────────────────────────────────


class AuthenticationError(SmartLaunchException):
    """Base exception for all authentication failures.

    Raised when an authentication operation fails, including
    OAuth2 exchanges, token validation, or client registration.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The OAuth2 grant implementation name (e.g., "OAuth2CodeGrant").
        flow_id : str, optional
            The unique identifier of the auth flow that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, **context)
        self.provider = provider
        self.flow_id = flow_id


class AuthFlowCancelled(AuthenticationError):
    """Authentication flow was cancelled.

    Raised when the user closes the authentication window, the caller
    cancels the authorize task, or a newer authorization aborts this one.
    """


class AuthFlowTimeout(AuthenticationError):
    """Authentication flow timed out.

    Raised when the loopback callback server does not receive a
    redirect within the configured time.
    """

    def __init__(self, message: str, timeout: float | None = None, **kwargs: Any) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float, optional
            The timeout value that was exceeded (in seconds).
        **kwargs : Any
            Additional context passed to AuthenticationError.
        """
        super().__init__(message, timeout=timeout, **kwargs)
        self.timeout = timeout


class StateMismatchError(AuthenticationError):
    """The redirect's ``state`` parameter does not match the one sent."""


class AuthorizationServerError(AuthenticationError):
    """The authorization server answered with an OAuth2 ``error`` response."""

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        provider: str | None = None,
        **context: Any,
    ) -> None:
        message = f"Authorization server returned error: {error_description or error}"
        super().__init__(message, provider=provider, error=error, **context)
        self.error = error
        self.error_description = error_description


class ClientRegistrationError(AuthenticationError):
    """Dynamic client registration failed."""


class TokenError(AuthenticationError):
    """Base exception for token-related failures.

    Raised when token operations (validation, refresh, exchange) fail.
    """


class TokenExpiredError(TokenError):
    """Token has expired.

    Raised when an access token is past its expiry time and
    no refresh is possible.
    """


class TokenRefreshError(TokenError):
    """Token refresh failed.

    Raised when attempting to refresh an expired access token
    using a refresh token fails.
    """


class NoRefreshTokenError(TokenRefreshError):
    """A refresh was requested but no usable token came out of it."""

    def __init__(self, message: str = "No refresh token available", **context: Any) -> None:
        super().__init__(message, **context)


class NoAccessTokenError(TokenError):
    """No access token is available after a refresh."""

    def __init__(self, message: str = "No access token available", **context: Any) -> None:
        super().__init__(message, **context)


# ── Unified client errors ───────────────────────────────────────────


class ErrorKind(str, Enum):
    """Tag of a :class:`SMARTClientError`."""

    CONFIGURATION = "configuration"
    OAUTH = "oauth"
    HTTP = "http"
    DECODING = "decoding"
    CANCELLED = "cancelled"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    OTHER = "other"


class SMARTClientError(SmartLaunchException):
    """Unified error reported to callers of the public client API.

    Each concrete subclass represents exactly one tag; ``kind`` and
    ``code`` identify it without isinstance checks.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.OTHER
    code: ClassVar[int] = 8

    def __init__(
        self,
        message: str,
        underlying: BaseException | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, **context)
        self.underlying = underlying


class ClientConfigurationError(SMARTClientError):
    """Fetching or decoding the discovery document failed."""

    kind = ErrorKind.CONFIGURATION
    code = 1

    def __init__(self, url: str, underlying: BaseException) -> None:
        super().__init__(
            f"Configuration error for {url}: {underlying}",
            underlying=underlying,
            url=url,
        )
        self.url = url


class ClientOAuthError(SMARTClientError):
    """An OAuth2 exchange (authorize, token, refresh, registration) failed."""

    kind = ErrorKind.OAUTH
    code = 2

    def __init__(self, underlying: BaseException, token_endpoint: str | None = None) -> None:
        super().__init__(str(underlying), underlying=underlying, token_endpoint=token_endpoint)
        self.token_endpoint = token_endpoint


class ClientHTTPError(SMARTClientError):
    """The data API answered with a non-success status."""

    kind = ErrorKind.HTTP
    code = 3

    def __init__(
        self,
        status: int,
        url: str,
        headers: dict[str, str] | None = None,
        outcome: dict[str, Any] | None = None,
        underlying: BaseException | None = None,
    ) -> None:
        detail = _outcome_text(outcome) or (str(underlying) if underlying else "request failed")
        super().__init__(f"HTTP {status} for {url}: {detail}", underlying=underlying, url=url)
        self.status = status
        self.url = url
        self.headers = headers or {}
        self.outcome = outcome


class ClientDecodingError(SMARTClientError):
    """A response body could not be decoded."""

    kind = ErrorKind.DECODING
    code = 4

    def __init__(
        self,
        underlying: BaseException,
        url: str | None = None,
        body_snippet: str | None = None,
    ) -> None:
        message = f"Failed to decode response for {url}" if url else "Failed to decode response"
        super().__init__(message, underlying=underlying, url=url)
        self.url = url
        self.body_snippet = body_snippet


class ClientCancelledError(SMARTClientError):
    """The operation was cancelled by the user, the caller or the transport."""

    kind = ErrorKind.CANCELLED
    code = 5

    def __init__(self, underlying: BaseException | None = None) -> None:
        super().__init__("Operation was cancelled", underlying=underlying)


class ClientRateLimitedError(SMARTClientError):
    """The server rejected the request with 429 Too Many Requests."""

    kind = ErrorKind.RATE_LIMITED
    code = 6

    def __init__(
        self,
        url: str,
        retry_after: datetime | None = None,
        underlying: BaseException | None = None,
    ) -> None:
        message = f"Rate limited for {url}"
        if retry_after is not None:
            message = f"{message}. Retry after {retry_after.isoformat()}"
        super().__init__(message, underlying=underlying, url=url)
        self.url = url
        self.retry_after = retry_after


class ClientNetworkError(SMARTClientError):
    """A transport-level failure (DNS, connect, timeout, protocol)."""

    kind = ErrorKind.NETWORK
    code = 7

    def __init__(self, underlying: BaseException) -> None:
        super().__init__(str(underlying) or type(underlying).__name__, underlying=underlying)


class ClientOtherError(SMARTClientError):
    """Anything that fits no other tag."""

    kind = ErrorKind.OTHER
    code = 8

    def __init__(self, underlying: BaseException) -> None:
        super().__init__(str(underlying) or type(underlying).__name__, underlying=underlying)


def _outcome_text(outcome: dict[str, Any] | None) -> str | None:
    """Pull a human-readable line out of an OperationOutcome dict."""
    if not outcome:
        return None
    issues = outcome.get("issue") or []
    if not issues or not isinstance(issues[0], dict):
        return None
    issue = issues[0]
    if issue.get("diagnostics"):
        return str(issue["diagnostics"])
    details = issue.get("details")
    if isinstance(details, dict) and details.get("text"):
        return str(details["text"])
    return None
