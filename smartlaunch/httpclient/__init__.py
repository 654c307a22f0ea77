"""Interceptor-based HTTP pipeline built on httpx."""

from .chain import Chain, Interceptor
from .client import REQUEST_ID_HEADER, HTTPClient, is_loopback_url
from .retry import (
    RetryDirective,
    RetryInterceptor,
    RetryPolicy,
    RetryReason,
    parse_retry_after,
)


__all__ = [
    "REQUEST_ID_HEADER",
    "Chain",
    "HTTPClient",
    "Interceptor",
    "RetryDirective",
    "RetryInterceptor",
    "RetryPolicy",
    "RetryReason",
    "is_loopback_url",
    "parse_retry_after",
]
