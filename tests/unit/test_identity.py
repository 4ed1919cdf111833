"""Tests for patient identity normalization."""

import pytest

from followup.core.errors import ValidationError
from followup.core.identity import PatientIdentity, normalize_identity, require_identity


class TestNormalizeIdentity:
    """Test normalize_identity."""

    @pytest.mark.parametrize(
        "raw",
        [
            "+15550102000",
            "whatsapp:+1 (555) 010-2000",
            "sms:+1-555-010-2000",
            "tel:15550102000",
            "555.010.2000",
            "(555) 010 2000",
            "001 555 010 2000",
        ],
    )
    def test_channel_formats_share_one_key(self, raw):
        """Every format of the same number maps to the same key."""
        identity = normalize_identity(raw)

        assert identity.value == "+15550102000"
        assert identity.verified is True

    def test_international_number_kept(self):
        """Test a non-default country code is preserved."""
        identity = normalize_identity("whatsapp:+44 20 7946 0000")

        assert identity.value == "+442079460000"
        assert identity.verified

    def test_double_zero_prefix(self):
        """Test 00 is read as an international prefix."""
        assert normalize_identity("0044 20 7946 0000").value == "+442079460000"

    def test_short_number_unverified(self):
        """Test a handle too short for E.164 falls back to raw digits."""
        identity = normalize_identity("12345")

        assert identity.value == "unverified:12345"
        assert identity.verified is False

    def test_garbage_never_raises(self):
        """Test normalization is total."""
        assert normalize_identity("not a phone").value == "unverified:"
        assert normalize_identity("").verified is False
        assert normalize_identity(None).verified is False

    def test_deterministic(self):
        """Test the same input always gives the same output."""
        assert normalize_identity("555-010-2000") == normalize_identity("555-010-2000")


class TestRequireIdentity:
    """Test boundary validation."""

    def test_accepts_valid_handle(self):
        """Test valid handles pass through."""
        assert str(require_identity("whatsapp:+15550102000")) == "+15550102000"

    def test_rejects_handle_without_digits(self):
        """Test a handle with no digits is rejected."""
        with pytest.raises(ValidationError):
            require_identity("whatsapp:")

    def test_accepts_unverified_with_digits(self):
        """Test short handles are accepted but tagged."""
        identity = require_identity("12345")

        assert not identity.verified


class TestPatientIdentity:
    """Test PatientIdentity helpers."""

    def test_digits(self):
        """Test digits strips formatting and tags."""
        assert PatientIdentity("+15550102000").digits == "15550102000"
        assert PatientIdentity("unverified:123", verified=False).digits == "123"

    def test_from_key(self):
        """Test rebuilding from a stored session key."""
        assert PatientIdentity.from_key("+15550102000").verified is True
        assert PatientIdentity.from_key("unverified:123").verified is False
