"""SMART launch context carried alongside the token response."""

from __future__ import annotations

import logging

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


logger = logging.getLogger("smartlaunch.auth")

# Presence of any of these in a token response means launch context was granted
CONTEXT_KEYS = frozenset(
    {
        "patient",
        "encounter",
        "fhirContext",
        "need_patient_banner",
        "smart_style_url",
        "intent",
        "tenant",
        "location",
    }
)

# Token response members that are never part of the launch context
_TOKEN_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "token_type",
        "expires_in",
        "scope",
        "state",
        "launch_context",
        "patient_resource",
    }
)


class LaunchContext(BaseModel):
    """Launch context returned by the authorization server.

    Unknown members of the token response are kept in ``model_extra``
    and re-emitted by :meth:`to_dict`.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    patient: str | None = None
    encounter: str | None = None
    user: str | None = Field(default=None, alias="fhirUser")
    need_patient_banner: bool | None = None
    smart_style_url: str | None = None
    intent: str | None = None
    tenant: str | None = None
    location: str | None = None
    fhir_context: list[Any] | None = Field(default=None, alias="fhirContext")

    @property
    def additional_fields(self) -> dict[str, Any]:
        """Members that are not recognized launch context keys."""
        return dict(self.model_extra or {})

    def to_dict(self) -> dict[str, Any]:
        """Encode using the wire names, omitting unset members."""
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_launch_context(parameters: dict[str, Any]) -> LaunchContext | None:
    """Extract launch context from token response parameters.

    Parameters
    ----------
    parameters : dict[str, Any]
        The decoded token response.

    Returns
    -------
    LaunchContext or None
        The context, or None when no recognized key is present or the
        values do not have the expected shape.
    """
    if not any(key in parameters for key in CONTEXT_KEYS):
        return None
    payload = {k: v for k, v in parameters.items() if k not in _TOKEN_KEYS}
    try:
        return LaunchContext.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Failed to parse launch context: %s", exc)
        return None
