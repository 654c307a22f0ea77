"""Logging utilities for smartlaunch.

All operations log warnings instead of raising exceptions for non-fatal errors.
"""

from __future__ import annotations

import logging
import sys

from typing import Any


class _LoggerHolder:
    """Holder for the global logger instance."""

    instance: logging.Logger | None = None


def get_logger() -> logging.Logger:
    """Get the smartlaunch logger instance.

    Child loggers (``smartlaunch.auth``, ``smartlaunch.http``,
    ``smartlaunch.discovery``) propagate to this one.

    Returns
    -------
    logging.Logger
        The smartlaunch logger configured with a stream handler.
    """
    if _LoggerHolder.instance is None:
        logger = logging.getLogger("smartlaunch")
        logger.setLevel(logging.WARNING)

        # Only add handler if none exists
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setLevel(logging.DEBUG)
            formatter = logging.Formatter("%(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        _LoggerHolder.instance = logger

    return _LoggerHolder.instance


def set_level(level: int | str) -> None:
    """Set the logging level.

    Parameters
    ----------
    level : int or str
        The logging level (e.g., logging.DEBUG, "DEBUG").
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    get_logger().setLevel(level)


def set_format(fmt: str) -> None:
    """Replace the formatter on every handler of the smartlaunch logger."""
    formatter = logging.Formatter(fmt)
    for handler in get_logger().handlers:
        handler.setFormatter(formatter)


def enable_debug() -> None:
    """Enable debug mode.

    This will show all debug messages including:
    - Discovery fetches and cache hits
    - Authorize parameters (redacted)
    - Refresh and retry decisions
    """
    set_level(logging.DEBUG)


# Keys that should be redacted in log output
_SENSITIVE_KEYS = frozenset(
    {
        "token",
        "secret",
        "password",
        "verifier",
        "assertion",
        "credential",
        "api_key",
    }
)

# Exact keys redacted without substring matching
_SENSITIVE_EXACT = frozenset({"code", "authorization"})


def redact_sensitive_data(
    data: dict[str, Any] | list[Any] | str | None, max_depth: int = 5
) -> dict[str, Any] | list[Any] | str | None:
    """Redact sensitive values from data for safe logging.

    Recursively traverses dicts/lists and replaces values for keys
    that match sensitive patterns with "[REDACTED]".

    Parameters
    ----------
    data : dict or list or str or None
        The data to redact.
    max_depth : int, optional
        Maximum recursion depth to prevent infinite loops (default: 5).

    Returns
    -------
    dict or list or str or None
        A copy of the data with sensitive values redacted.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH]"

    if data is None:
        return None

    if isinstance(data, dict):
        result: dict[str, Any] = {}
        for k, v in data.items():
            key_lower = k.lower() if isinstance(k, str) else str(k).lower()
            if key_lower == "token_type":
                result[k] = v
            elif key_lower in _SENSITIVE_EXACT or any(
                sensitive in key_lower for sensitive in _SENSITIVE_KEYS
            ):
                result[k] = "[REDACTED]"
            else:
                result[k] = redact_sensitive_data(v, max_depth - 1)
        return result

    if isinstance(data, list):
        return [redact_sensitive_data(item, max_depth - 1) for item in data]

    # For strings and other primitives, return as-is
    return data
