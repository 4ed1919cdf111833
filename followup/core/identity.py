"""
Patient identity normalization.

Messaging handles arrive in many shapes ("whatsapp:+1 (555) 010-2000",
"555.010.2000", "0044 20 7946 0000"). Every handle maps to exactly one
canonical key so that sessions created from the initiation feed line up
with replies arriving from the messaging feed.
"""

import logging
import re
from dataclasses import dataclass

from followup.core.errors import ValidationError

logger = logging.getLogger(__name__)

CHANNEL_PREFIXES = ("whatsapp:", "sms:", "tel:", "mms:")
UNVERIFIED_PREFIX = "unverified:"

MIN_E164_DIGITS = 8
MAX_E164_DIGITS = 15


@dataclass(frozen=True)
class PatientIdentity:
    """Canonical, channel-independent patient handle."""

    value: str
    verified: bool = True

    def __str__(self) -> str:
        return self.value

    @property
    def digits(self) -> str:
        """Digits only, without '+' or the unverified tag."""
        return re.sub(r"\D", "", self.value)

    @classmethod
    def from_key(cls, key: str) -> "PatientIdentity":
        """Rebuild an identity from a stored session key."""
        return cls(value=key, verified=not key.startswith(UNVERIFIED_PREFIX))


def normalize_identity(raw: str, default_country_code: str = "1") -> PatientIdentity:
    """Normalize a raw phone handle to E.164-like form.

    Never raises. Handles that cannot be read as a phone number fall back
    to their raw digits tagged ``unverified:``.

    Args:
        raw: Phone handle as delivered by a channel
        default_country_code: Country code prepended to national numbers

    Returns:
        PatientIdentity
    """
    text = (raw or "").strip().lower()
    for prefix in CHANNEL_PREFIXES:
        if text.startswith(prefix):
            text = text[len(prefix):].strip()
            break

    digits = re.sub(r"\D", "", text)
    international = text.startswith("+")

    if not international and digits.startswith("00"):
        digits = digits[2:]
        international = True

    if not international:
        national_length = 10 if default_country_code == "1" else None
        if national_length and len(digits) == national_length:
            digits = f"{default_country_code}{digits}"
            international = True
        elif len(digits) > 10 and digits.startswith(default_country_code):
            international = True

    if international and MIN_E164_DIGITS <= len(digits) <= MAX_E164_DIGITS:
        return PatientIdentity(value=f"+{digits}", verified=True)

    logger.debug(f"Handle could not be normalized, tagging unverified ({len(digits)} digits)")
    return PatientIdentity(value=f"{UNVERIFIED_PREFIX}{digits}", verified=False)


def require_identity(raw: str, default_country_code: str = "1") -> PatientIdentity:
    """Normalize a handle at the system boundary.

    Raises:
        ValidationError: If the handle has no digits at all
    """
    identity = normalize_identity(raw, default_country_code)
    if not identity.digits:
        raise ValidationError(f"Patient handle has no digits: {raw!r}")
    if not identity.verified:
        logger.warning(f"Accepting unverified patient handle {identity}")
    return identity
