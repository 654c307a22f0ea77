"""``WWW-Authenticate`` challenge parsing."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class BearerChallenge:
    """A parsed authentication challenge.

    Attributes
    ----------
    scheme : str
        The auth scheme as sent by the server (e.g. ``"Bearer"``).
    parameters : dict[str, str]
        Challenge parameters keyed by lower-cased name.
    """

    scheme: str
    parameters: dict[str, str] = field(default_factory=dict)

    @property
    def error(self) -> str | None:
        """The ``error`` parameter, if any."""
        return self.parameters.get("error")

    @property
    def error_description(self) -> str | None:
        """The ``error_description`` parameter, if any."""
        return self.parameters.get("error_description")

    @property
    def error_uri(self) -> str | None:
        """The ``error_uri`` parameter, if any."""
        return self.parameters.get("error_uri")

    def value(self, key: str) -> str | None:
        """Look up a parameter case-insensitively."""
        return self.parameters.get(key.lower())

    def is_bearer(self) -> bool:
        """Whether the scheme is ``Bearer`` (case-insensitive)."""
        return self.scheme.lower() == "bearer"


def parse_www_authenticate(header: str | None) -> BearerChallenge | None:
    """Parse a ``WWW-Authenticate`` header value.

    Parameters are split on ``,`` and each on its first ``=``; values
    lose one pair of surrounding double quotes. A pair without ``=``, or
    with nothing on either side of it, makes the whole header malformed.
    Quoted values containing commas are not supported.

    Parameters
    ----------
    header : str or None
        The raw header value.

    Returns
    -------
    BearerChallenge or None
        The parsed challenge, or None when the header is empty or malformed.
    """
    if not header:
        return None
    trimmed = header.strip()
    if not trimmed:
        return None

    scheme, sep, rest = trimmed.partition(" ")
    if not sep:
        # A lone token is a scheme only when it is not a stray key=value pair
        return None if "=" in trimmed else BearerChallenge(scheme=trimmed)

    scheme = scheme.strip()
    if not scheme:
        return None
    rest = rest.strip()
    if not rest:
        return BearerChallenge(scheme=scheme)

    parameters: dict[str, str] = {}
    for raw_pair in rest.split(","):
        pair = raw_pair.strip()
        if not pair:
            continue
        key, eq, value = pair.partition("=")
        if not eq or not value:
            return None
        key = key.strip()
        if not key:
            return None
        value = value.strip()
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1]
        parameters[key.lower()] = value

    return BearerChallenge(scheme=scheme, parameters=parameters)
