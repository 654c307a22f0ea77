"""smartlaunch - asyncio client for SMART App Launch.

Discovers a FHIR server's SMART configuration, runs the authorization
(standalone or EHR launch, PKCE S256), extracts the launch context and
sends data requests through a pipeline that injects the bearer token,
refreshes it once when the server rejects it and retries transient
failures.
"""

from .auth import (
    AuthUIHandler,
    LaunchContext,
    LoopbackAuthUIHandler,
    NoUIAuthHandler,
    PKCEChallenge,
)
from .client import Client
from .config import (
    LogSettings,
    OAuth2Settings,
    RetrySettings,
    SmartLaunchSettings,
    clear_settings,
    get_settings,
)
from .discovery import SMARTConfiguration
from .error_mapping import map_error
from .exceptions import (
    AuthenticationError,
    ClientCancelledError,
    ClientConfigurationError,
    ClientDecodingError,
    ClientHTTPError,
    ClientNetworkError,
    ClientOAuthError,
    ClientOtherError,
    ClientRateLimitedError,
    ConfigurationError,
    ErrorKind,
    SMARTClientError,
    SmartLaunchException,
)
from .httpclient import HTTPClient, Interceptor, RetryPolicy
from .log import enable_debug, get_logger, set_level
from .server import Server
from .types import AuthFlowState, AuthGranularity, AuthProperties, AuthType


__version__ = "0.1.0"

__all__ = [
    "AuthFlowState",
    "AuthGranularity",
    "AuthProperties",
    "AuthType",
    "AuthUIHandler",
    "AuthenticationError",
    "Client",
    "ClientCancelledError",
    "ClientConfigurationError",
    "ClientDecodingError",
    "ClientHTTPError",
    "ClientNetworkError",
    "ClientOAuthError",
    "ClientOtherError",
    "ClientRateLimitedError",
    "ConfigurationError",
    "ErrorKind",
    "HTTPClient",
    "Interceptor",
    "LaunchContext",
    "LogSettings",
    "LoopbackAuthUIHandler",
    "NoUIAuthHandler",
    "OAuth2Settings",
    "PKCEChallenge",
    "RetryPolicy",
    "RetrySettings",
    "SMARTClientError",
    "SMARTConfiguration",
    "Server",
    "SmartLaunchException",
    "__version__",
    "clear_settings",
    "enable_debug",
    "get_logger",
    "get_settings",
    "map_error",
    "set_level",
]
