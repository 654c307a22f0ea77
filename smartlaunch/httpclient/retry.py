"""Retry policy and the interceptor that applies it.

The policy is a pure decision function: given a response status (or a
transport error), the request method and the zero-based attempt number,
it returns a :class:`RetryDirective` or ``None``.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging
import math
import random

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import TYPE_CHECKING

import httpx

from .chain import Interceptor


if TYPE_CHECKING:
    from .chain import Chain

logger = logging.getLogger("smartlaunch.http")

TRANSIENT_STATUSES = frozenset({408, 500, 502, 503, 504})

# Connectivity failures worth another attempt: timeouts, connect/DNS/read/write
# failures and connections dropped mid-response.
TRANSIENT_ERRORS: tuple[type[httpx.TransportError], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


class RetryReason(str, Enum):
    """Why a retry was scheduled."""

    RETRY_AFTER = "retry_after"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class RetryDirective:
    """Instruction to wait ``delay`` seconds and try again."""

    delay: float
    reason: RetryReason


def parse_retry_after(header: str | None, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header into seconds.

    Parameters
    ----------
    header : str or None
        Either a number of seconds or an HTTP-date in RFC 1123, RFC 850
        or asctime format.
    now : datetime, optional
        Reference time for HTTP-dates (defaults to the current UTC time).

    Returns
    -------
    float or None
        Seconds to wait (negative for dates in the past), or None when
        the header is missing or unparseable.
    """
    if header is None:
        return None
    value = header.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return seconds if math.isfinite(seconds) else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    return (when - reference).total_seconds()


def _uniform(bounds: tuple[float, float]) -> float:
    return random.uniform(*bounds)  # noqa: S311


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration.

    Attributes
    ----------
    max_retries : int
        Transient retries allowed per request (0 disables them).
    base_delay : float
        Seconds before the first transient retry; doubles per attempt.
    max_backoff : float or None
        Upper bound applied to the exponential delay before jitter.
    jitter : tuple[float, float] or None
        Range the jitter factor is drawn from; the delay is multiplied
        by ``1 + factor``.
    allowed_methods : frozenset[str]
        Methods eligible for any retry.
    retry_after_retries : int
        How many ``Retry-After`` waits are honored per request.
    random_generator : Callable
        Draws a value from the ``jitter`` range.
    """

    max_retries: int = 0
    base_delay: float = 0.5
    max_backoff: float | None = None
    jitter: tuple[float, float] | None = None
    allowed_methods: frozenset[str] = frozenset({"GET", "HEAD"})
    retry_after_retries: int = 1
    random_generator: Callable[[tuple[float, float]], float] = field(
        default=_uniform, compare=False, repr=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "allowed_methods", frozenset(m.upper() for m in self.allowed_methods)
        )

    def directive_for_response(
        self,
        status: int,
        method: str | None,
        retry_after: str | None,
        attempt: int,
    ) -> RetryDirective | None:
        """Decide whether a response warrants another attempt.

        A parseable ``Retry-After`` wins over the backoff formula while
        ``attempt < retry_after_retries``.
        """
        if not self._allows(method):
            return None

        delay = parse_retry_after(retry_after)
        if delay is not None and attempt < self.retry_after_retries:
            return RetryDirective(delay=max(delay, 0.0), reason=RetryReason.RETRY_AFTER)

        if self.max_retries <= 0 or attempt >= self.max_retries:
            return None
        if status not in TRANSIENT_STATUSES:
            return None
        return RetryDirective(delay=self.backoff_delay(attempt), reason=RetryReason.TRANSIENT)

    def directive_for_error(
        self,
        error: BaseException,
        method: str | None,
        attempt: int,
    ) -> RetryDirective | None:
        """Decide whether a transport error warrants another attempt."""
        if not self._allows(method):
            return None
        if self.max_retries <= 0 or attempt >= self.max_retries:
            return None
        if not isinstance(error, TRANSIENT_ERRORS):
            return None
        return RetryDirective(delay=self.backoff_delay(attempt), reason=RetryReason.TRANSIENT)

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay for ``attempt``, capped and then jittered."""
        delay = self.base_delay * (2.0**attempt)
        if self.max_backoff is not None:
            delay = min(delay, self.max_backoff)
        if self.jitter is not None:
            delay *= 1.0 + self.random_generator(self.jitter)
        return delay

    def _allows(self, method: str | None) -> bool:
        if not method:
            return False
        return method.upper() in self.allowed_methods


async def _default_sleep(delay: float) -> None:
    if delay > 0:
        await asyncio.sleep(delay)


class RetryInterceptor(Interceptor):
    """Re-send a request while the policy returns a directive.

    Attempts of one request are strictly sequential; the same request
    object is re-sent each time.

    Parameters
    ----------
    policy : RetryPolicy, optional
        Decision policy (defaults to ``RetryPolicy()``, which retries
        only on ``Retry-After``).
    sleep : Callable, optional
        Awaitable used to wait between attempts.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = _default_sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def intercept(self, chain: Chain) -> httpx.Response:
        request = chain.request
        attempt = 0
        while True:
            try:
                response = await chain.proceed(request)
            except httpx.TransportError as exc:
                directive = self.policy.directive_for_error(exc, request.method, attempt)
                if directive is None:
                    raise
                logger.debug(
                    "Retrying %s %s after %s in %.3fs (attempt %d)",
                    request.method,
                    request.url,
                    type(exc).__name__,
                    directive.delay,
                    attempt + 1,
                )
            else:
                directive = self.policy.directive_for_response(
                    response.status_code,
                    request.method,
                    response.headers.get("Retry-After"),
                    attempt,
                )
                if directive is None:
                    return response
                logger.debug(
                    "Retrying %s %s after status %d in %.3fs (%s)",
                    request.method,
                    request.url,
                    response.status_code,
                    directive.delay,
                    directive.reason.value,
                )
                await response.aclose()
            await self._sleep(directive.delay)
            attempt += 1
