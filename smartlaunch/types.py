"""Type definitions shared across the authorization engine."""

from __future__ import annotations

import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AuthType(str, Enum):
    """The OAuth2 grant used against the authorization server."""

    NONE = "none"
    IMPLICIT = "implicit"
    CODE_GRANT = "authorization_code"
    CLIENT_CREDENTIALS = "client_credentials"


class AuthGranularity(str, Enum):
    """How much launch context the authorize flow should request."""

    TOKEN_ONLY = "token_only"
    LAUNCH_CONTEXT = "launch_context"
    PATIENT_SELECT_WEB = "patient_select_web"
    PATIENT_SELECT_NATIVE = "patient_select_native"


class AuthFlowState(str, Enum):
    """State of an authorization attempt."""

    IDLE = "idle"
    CONFIGURING = "configuring"
    AWAITING_REDIRECT = "awaiting_redirect"
    EXCHANGING = "exchanging"
    POST_PROCESSING = "post_processing"


@dataclass
class AuthProperties:
    """Properties for one authorize call.

    Attributes
    ----------
    embedded : bool
        Present the authorize URL through the UI handler and wait for
        its redirect. When False the URL is opened in the system browser
        and the caller forwards the redirect via ``did_redirect``.
    granularity : AuthGranularity
        Which launch scopes to request.
    """

    embedded: bool = True
    granularity: AuthGranularity = AuthGranularity.PATIENT_SELECT_NATIVE


@dataclass
class OAuthTokenSet:
    """OAuth2 token set returned by a token endpoint.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    token_type : str
        Token type, typically "Bearer".
    refresh_token : str or None
        Optional refresh token for obtaining new access tokens.
    expires_in : int or None
        Token lifetime in seconds from issuance.
    id_token : str or None
        Optional OIDC ID token (JWT).
    scope : str
        Space-separated list of granted scopes.
    raw : dict[str, Any]
        The raw token response, including SMART launch parameters.
    issued_at : float
        Unix timestamp when the token was issued.
    """

    access_token: str
    token_type: str = "Bearer"  # noqa: S105
    refresh_token: str | None = None
    expires_in: int | None = None
    id_token: str | None = None
    scope: str = ""
    raw: dict[str, Any] = field(default_factory=dict)
    issued_at: float = field(default_factory=time.time)

    @property
    def is_expired(self) -> bool:
        """Check if the access token has expired."""
        if self.expires_in is None:
            return False
        return time.time() > (self.issued_at + self.expires_in)

    @property
    def expires_at(self) -> float | None:
        """Get the expiry timestamp, or None if no expiry."""
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> OAuthTokenSet:
        """Build a token set from a decoded token endpoint response.

        Parameters
        ----------
        data : dict[str, Any]
            The JSON body returned by the token (or implicit redirect) endpoint.

        Returns
        -------
        OAuthTokenSet
            The parsed token set; ``raw`` keeps every key of ``data``.
        """
        expires_in = data.get("expires_in")
        return cls(
            access_token=str(data.get("access_token", "")),
            token_type=str(data.get("token_type", "Bearer")),
            refresh_token=data.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            id_token=data.get("id_token"),
            scope=str(data.get("scope", "")),
            raw=dict(data),
        )
