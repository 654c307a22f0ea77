"""Tests for launch context extraction."""

from __future__ import annotations

import logging

import pytest

from smartlaunch.auth.launch_context import LaunchContext, parse_launch_context


class TestParseLaunchContext:
    """Tests for parse_launch_context()."""

    def test_no_context_keys(self) -> None:
        """A plain token response carries no launch context."""
        assert parse_launch_context({"access_token": "a", "token_type": "Bearer"}) is None

    def test_patient_and_encounter(self) -> None:
        """Recognized members are parsed, token members are left out."""
        context = parse_launch_context(
            {
                "access_token": "secret",
                "refresh_token": "secret",
                "scope": "launch/patient openid",
                "patient": "123",
                "encounter": "enc-9",
                "need_patient_banner": True,
                "smart_style_url": "https://ehr.example.org/style.json",
            }
        )
        assert context is not None
        assert context.patient == "123"
        assert context.encounter == "enc-9"
        assert context.need_patient_banner is True
        assert context.smart_style_url == "https://ehr.example.org/style.json"
        assert context.additional_fields == {}

    def test_aliases_and_extras(self) -> None:
        """fhirUser and fhirContext use wire names; unknown members are kept."""
        parameters = {
            "patient": "p1",
            "fhirUser": "Practitioner/7",
            "fhirContext": [{"reference": "Encounter/1"}],
            "tenant": "acme",
            "vendor_flag": "on",
        }
        context = parse_launch_context(parameters)
        assert context is not None
        assert context.user == "Practitioner/7"
        assert context.fhir_context == [{"reference": "Encounter/1"}]
        assert context.additional_fields == {"vendor_flag": "on"}
        assert context.to_dict() == parameters

    def test_invalid_shape_logs_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        """Values of the wrong type yield None with a warning."""
        with caplog.at_level(logging.WARNING, logger="smartlaunch.auth"):
            assert parse_launch_context({"patient": {"id": 1}}) is None
        assert "Failed to parse launch context" in caplog.text

    def test_to_dict_omits_unset(self) -> None:
        """Unset members are not emitted."""
        assert LaunchContext(patient="123").to_dict() == {"patient": "123"}

    def test_populate_by_field_name(self) -> None:
        """Field names are accepted alongside aliases."""
        context = LaunchContext(user="Patient/1")
        assert context.to_dict() == {"fhirUser": "Patient/1"}

    def test_frozen(self) -> None:
        """LaunchContext is immutable."""
        context = LaunchContext(patient="123")
        with pytest.raises(ValueError):
            context.patient = "456"  # type: ignore[misc]
