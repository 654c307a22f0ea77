"""SMART App Launch authorization.

Provides the OAuth2 grants, the authorization engine, launch context
parsing, the request interceptors applying tokens, and UI handlers.
"""

from __future__ import annotations

from .auth import Auth, normalize_scope, redirect_matches_template
from .callback_server import OAuthCallbackServer
from .challenge import BearerChallenge, parse_www_authenticate
from .core import AuthCore
from .interceptors import AuthRefreshInterceptor, BearerInterceptor, RefreshCoordinator
from .launch_context import LaunchContext, parse_launch_context
from .oauth2 import (
    OAuth2,
    OAuth2ClientCredentials,
    OAuth2CodeGrant,
    OAuth2ImplicitGrant,
    make_oauth,
)
from .pkce import PKCEChallenge
from .ui import AuthUIHandler, LoopbackAuthUIHandler, NoUIAuthHandler


__all__ = [
    "Auth",
    "AuthCore",
    "AuthRefreshInterceptor",
    "AuthUIHandler",
    "BearerChallenge",
    "BearerInterceptor",
    "LaunchContext",
    "LoopbackAuthUIHandler",
    "NoUIAuthHandler",
    "OAuth2",
    "OAuth2ClientCredentials",
    "OAuth2CodeGrant",
    "OAuth2ImplicitGrant",
    "OAuthCallbackServer",
    "PKCEChallenge",
    "RefreshCoordinator",
    "make_oauth",
    "normalize_scope",
    "parse_launch_context",
    "parse_www_authenticate",
    "redirect_matches_template",
]
