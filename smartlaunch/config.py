"""Configuration system for smartlaunch using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.smartlaunch] section (project-level)
3. ./smartlaunch.toml (project-level, explicit)
4. File named by SMARTLAUNCH_CONFIG_FILE
5. Environment variables (highest priority)

Environment variables use SMARTLAUNCH_ prefix with nested delimiter __.
Example: SMARTLAUNCH_RETRY__MAX_RETRIES, SMARTLAUNCH_OAUTH2__CLIENT_ID
"""

from __future__ import annotations

import logging
import os
import tomllib

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .httpclient.retry import RetryPolicy
from .log import set_format, set_level


logger = logging.getLogger("smartlaunch")


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    # Project-level pyproject.toml [tool.smartlaunch] (lowest file priority)
    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    # Explicit smartlaunch.toml (project-level)
    project_toml = Path("smartlaunch.toml")
    if project_toml.exists():
        files.append(project_toml)

    # Environment variable override for config file (highest file priority)
    env_config = os.environ.get("SMARTLAUNCH_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring invalid config file %s: %s", config_file, exc)
            continue

        # Handle pyproject.toml [tool.smartlaunch] section
        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("smartlaunch", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _split_csv(v: Any) -> Any:
    if isinstance(v, str):
        return [p.strip() for p in v.split(",") if p.strip()]
    return v


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: SMARTLAUNCH_LOG__
    Example: SMARTLAUNCH_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="SMARTLAUNCH_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"

    def apply(self) -> None:
        """Apply level and format to the smartlaunch logger."""
        set_level(self.level)
        set_format(self.format)


class RetrySettings(BaseSettings):
    """Retry policy for data requests.

    Environment prefix: SMARTLAUNCH_RETRY__
    Example: SMARTLAUNCH_RETRY__MAX_RETRIES=3
    Example: SMARTLAUNCH_RETRY__ALLOWED_METHODS=GET,HEAD,OPTIONS
    """

    model_config = SettingsConfigDict(
        env_prefix="SMARTLAUNCH_RETRY__",
        extra="ignore",
    )

    max_retries: int = Field(default=0, ge=0, description="Transient retries per request")
    base_delay: float = Field(default=0.5, ge=0.0, description="First backoff delay in seconds")
    max_backoff: float | None = Field(
        default=None, ge=0.0, description="Upper bound for the exponential delay"
    )
    jitter_min: float | None = Field(default=None, description="Lower bound of the jitter factor")
    jitter_max: float | None = Field(default=None, description="Upper bound of the jitter factor")
    allowed_methods: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["GET", "HEAD"],
        description="Methods eligible for retry (comma-separated in env vars)",
    )
    retry_after_retries: int = Field(
        default=1, ge=0, description="Retry-After waits honored per request"
    )

    @field_validator("allowed_methods", mode="before")
    @classmethod
    def _parse_allowed_methods(cls, v: Any) -> list[str]:
        """Accept a comma-separated string (from env var) or a list."""
        v = _split_csv(v)
        if not isinstance(v, list):
            msg = (
                "allowed_methods must be a list or comma-separated string, "
                f"got {type(v).__name__}"
            )
            raise TypeError(msg)
        return [str(m).upper() for m in v]

    def to_policy(self) -> RetryPolicy:
        """Build the immutable :class:`RetryPolicy` these settings describe."""
        jitter = None
        if self.jitter_min is not None and self.jitter_max is not None:
            jitter = (self.jitter_min, self.jitter_max)
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_backoff=self.max_backoff,
            jitter=jitter,
            allowed_methods=frozenset(self.allowed_methods),
            retry_after_retries=self.retry_after_retries,
        )


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {"client_secret"}

_REDACTED = "********"


class OAuth2Settings(BaseSettings):
    """OAuth2 client settings.

    Known fields are typed; anything else (vendor extensions) is kept
    as an extra and survives :meth:`to_dict` unchanged.

    Environment prefix: SMARTLAUNCH_OAUTH2__
    Example: SMARTLAUNCH_OAUTH2__CLIENT_ID=my-app
    Example: SMARTLAUNCH_OAUTH2__REDIRECT=http://127.0.0.1:8765/callback

    TOML section: [tool.smartlaunch.oauth2]
    """

    model_config = SettingsConfigDict(
        env_prefix="SMARTLAUNCH_OAUTH2__",
        extra="allow",
    )

    client_id: str | None = Field(default=None, description="Registered client ID")
    client_secret: str | None = Field(
        default=None, description="Client secret (confidential clients only)"
    )
    client_name: str | None = Field(
        default=None, description="Client name sent during dynamic registration"
    )
    redirect: str | None = Field(default=None, description="Redirect URI of this app")
    redirect_uris: list[str] | None = Field(
        default=None, description="All redirect URIs (derived from 'redirect' when unset)"
    )
    scope: str | None = Field(default=None, description="Space-separated scopes to request")
    title: str | None = Field(default=None, description="Display title of the auth session")
    authorize_type: str | None = Field(
        default=None,
        description="authorization_code, implicit or client_credentials (inferred when unset)",
    )
    authorize_uri: str | None = Field(default=None, description="Authorization endpoint")
    token_uri: str | None = Field(default=None, description="Token endpoint")
    registration_uri: str | None = Field(
        default=None, description="Dynamic client registration endpoint"
    )
    logo_uri: str | None = Field(default=None, description="Logo sent during registration")
    use_pkce: bool | None = Field(default=None, description="Use PKCE (forced for code grant)")
    aud: str | None = Field(default=None, description="Audience, the FHIR base URL")

    @property
    def extras(self) -> dict[str, Any]:
        """Vendor extension settings."""
        return dict(self.model_extra or {})

    @property
    def redirect_uri(self) -> str | None:
        """The redirect URI to use: ``redirect`` or the first of ``redirect_uris``."""
        if self.redirect:
            return self.redirect
        if self.redirect_uris:
            return self.redirect_uris[0]
        return None

    def to_dict(self) -> dict[str, Any]:
        """Set values, known and extra, as a plain dict."""
        return self.model_dump(exclude_none=True)

    def redacted(self) -> dict[str, Any]:
        """Like :meth:`to_dict` with secrets masked."""
        data = self.to_dict()
        for name in _SENSITIVE_FIELDS & data.keys():
            data[name] = _REDACTED
        return data


class SmartLaunchSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: SMARTLAUNCH_

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.smartlaunch] section
    3. ./smartlaunch.toml (project-level)
    4. SMARTLAUNCH_CONFIG_FILE
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="SMARTLAUNCH_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    base_url: str | None = Field(default=None, description="FHIR server base URL")
    https_auth_base: str | None = Field(
        default=None,
        description="HTTPS base that http OAuth endpoints from discovery are rewritten onto",
    )
    allow_insecure_connections: bool = Field(
        default=False,
        description="Skip TLS verification for loopback hosts (development only)",
    )
    request_timeout: float = Field(default=30.0, gt=0.0, description="Transport timeout")

    log: LogSettings = Field(default_factory=LogSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    oauth2: OAuth2Settings | None = Field(
        default=None,
        description="OAuth2 client settings (None to rely on discovery and registration)",
    )

    def __init__(self, **data: Any) -> None:
        # Load TOML configuration first
        toml_config = _load_toml_config()

        # Merge TOML config with explicit data (explicit takes precedence)
        merged = _deep_merge(toml_config, data)

        # Env-only OAuth2 configuration works without an [oauth2] section
        if ("oauth2" not in merged or merged["oauth2"] is None) and os.environ.get(
            "SMARTLAUNCH_OAUTH2__CLIENT_ID"
        ):
            merged["oauth2"] = OAuth2Settings()

        super().__init__(**merged)


@lru_cache(maxsize=1)
def get_settings() -> SmartLaunchSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return SmartLaunchSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> SmartLaunchSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
