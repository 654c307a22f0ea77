"""Unit tests for PKCE challenge generation."""

from __future__ import annotations

import hashlib
import re

from base64 import urlsafe_b64encode

import pytest

from smartlaunch.auth.pkce import (
    MAX_VERIFIER_LENGTH,
    MIN_VERIFIER_LENGTH,
    PKCEChallenge,
    derive_challenge,
    generate_verifier,
)


class TestPKCEChallenge:
    """Tests for PKCEChallenge generation."""

    def test_generate_returns_challenge(self) -> None:
        """PKCEChallenge.generate() returns a valid S256 pair."""
        pkce = PKCEChallenge.generate()
        assert pkce.verifier
        assert pkce.challenge
        assert pkce.method == "S256"

    def test_default_length(self) -> None:
        """The default verifier has 64 characters."""
        assert len(PKCEChallenge.generate().verifier) == 64

    def test_verifier_uses_unreserved_characters(self) -> None:
        """Verifier contains only RFC 7636 unreserved characters."""
        pkce = PKCEChallenge.generate(length=128)
        assert re.fullmatch(r"[A-Za-z0-9\-._~]+", pkce.verifier)

    def test_challenge_matches_verifier_sha256(self) -> None:
        """Challenge is the unpadded base64url SHA-256 of the verifier."""
        pkce = PKCEChallenge.generate()
        digest = hashlib.sha256(pkce.verifier.encode("ascii")).digest()
        assert pkce.challenge == urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        assert "=" not in pkce.challenge

    def test_generate_uniqueness(self) -> None:
        """Each generation produces unique values."""
        a = PKCEChallenge.generate()
        b = PKCEChallenge.generate()
        assert a.verifier != b.verifier
        assert a.challenge != b.challenge

    def test_frozen_dataclass(self) -> None:
        """PKCEChallenge is immutable."""
        pkce = PKCEChallenge.generate()
        with pytest.raises(AttributeError):
            pkce.verifier = "new"  # type: ignore[misc]


class TestVerifierLength:
    """Verifier length is clamped into the RFC 7636 range."""

    @pytest.mark.parametrize(
        ("requested", "expected"),
        [
            (0, MIN_VERIFIER_LENGTH),
            (10, MIN_VERIFIER_LENGTH),
            (43, 43),
            (100, 100),
            (128, 128),
            (500, MAX_VERIFIER_LENGTH),
        ],
    )
    def test_length_clamped(self, requested: int, expected: int) -> None:
        """Out-of-range lengths are clamped to [43, 128]."""
        assert len(generate_verifier(requested)) == expected
        assert len(PKCEChallenge.generate(length=requested).verifier) == expected


class TestDeriveChallenge:
    """Tests for the S256 transformation."""

    def test_rfc7636_appendix_b_vector(self) -> None:
        """The RFC 7636 example verifier yields the documented challenge."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert derive_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
