"""PKCE (Proof Key for Code Exchange) implementation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier); the
plain method is never offered.
"""

from __future__ import annotations

import hashlib
import secrets
import string

from base64 import urlsafe_b64encode
from dataclasses import dataclass


MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128

# RFC 7636 section 4.1 unreserved characters
_VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"


def generate_verifier(length: int = 64) -> str:
    """Generate a random code verifier.

    Parameters
    ----------
    length : int
        Requested verifier length, clamped to ``[43, 128]``.

    Returns
    -------
    str
        A verifier drawn from the unreserved character set.
    """
    bounded = max(MIN_VERIFIER_LENGTH, min(length, MAX_VERIFIER_LENGTH))
    return "".join(secrets.choice(_VERIFIER_ALPHABET) for _ in range(bounded))


def derive_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for ``verifier``."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, length: int = 64) -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        length : int
            Number of verifier characters (default 64). Values outside
            the RFC 7636 bounds are clamped into ``[43, 128]``.

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        verifier = generate_verifier(length)
        return cls(verifier=verifier, challenge=derive_challenge(verifier))
