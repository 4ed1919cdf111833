"""Value types shared by the reconciler, state machine and coordinator."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from followup.core.errors import ValidationError
from followup.core.identity import PatientIdentity


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant, rejecting naive values."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError) as e:
        raise ValidationError(f"Invalid instant: {value!r}") from e
    if parsed.tzinfo is None:
        raise ValidationError(f"Instant must carry a UTC offset: {value!r}")
    return parsed


@dataclass(frozen=True)
class TimeInterval:
    """Half-open interval [start, end) between two aware instants."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValidationError("TimeInterval bounds must be timezone-aware")
        if self.start >= self.end:
            raise ValidationError(
                f"TimeInterval start must precede end ({self.start.isoformat()} >= {self.end.isoformat()})"
            )

    @property
    def duration(self):
        return self.end - self.start

    def overlaps(self, other: "TimeInterval") -> bool:
        """True if the two intervals share at least one instant."""
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeInterval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: dict) -> "TimeInterval":
        return cls(start=_parse_instant(data["start"]), end=_parse_instant(data["end"]))


@dataclass(frozen=True)
class CandidateSlot:
    """A proposed interval with the ordinal shown to the patient."""

    ordinal: int
    interval: TimeInterval

    def __post_init__(self):
        if self.ordinal < 1:
            raise ValidationError(f"Slot ordinal must be >= 1, got {self.ordinal}")

    def to_dict(self) -> dict:
        return {"ordinal": self.ordinal, **self.interval.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "CandidateSlot":
        return cls(ordinal=int(data["ordinal"]), interval=TimeInterval.from_dict(data))


@dataclass(frozen=True)
class WorkingHours:
    """Daily bookable hours in the clinic's local time.

    ``weekdays`` uses ISO numbering (1=Monday ... 7=Sunday).
    """

    start_of_day: time
    end_of_day: time
    weekdays: frozenset = field(default_factory=lambda: frozenset(range(1, 8)))

    def __post_init__(self):
        if self.start_of_day >= self.end_of_day:
            raise ValidationError("Working hours must start before they end")
        if not self.weekdays or not set(self.weekdays) <= set(range(1, 8)):
            raise ValidationError(f"Invalid working weekdays: {sorted(self.weekdays)}")


class IntervalKind(str, Enum):
    """How the follow-up interval was stated in the clinical note."""

    RELATIVE = "relative"
    UNBOUNDED = "unbounded"  # "as needed"
    UNSPECIFIED = "unspecified"


class IntervalUnit(str, Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


@dataclass(frozen=True)
class IntervalSpec:
    """Tagged follow-up interval: relative(amount, unit), unbounded or unspecified."""

    kind: IntervalKind
    amount: Optional[int] = None
    unit: Optional[IntervalUnit] = None

    def __post_init__(self):
        if self.kind == IntervalKind.RELATIVE:
            if self.amount is None or self.unit is None:
                raise ValidationError("Relative interval needs both amount and unit")
            if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount < 1:
                raise ValidationError(f"Relative interval amount must be a positive integer, got {self.amount!r}")
        elif self.amount is not None or self.unit is not None:
            raise ValidationError(f"{self.kind.value} interval takes no amount or unit")

    @classmethod
    def relative(cls, amount: int, unit: IntervalUnit) -> "IntervalSpec":
        return cls(kind=IntervalKind.RELATIVE, amount=amount, unit=IntervalUnit(unit))

    @classmethod
    def unbounded(cls) -> "IntervalSpec":
        return cls(kind=IntervalKind.UNBOUNDED)

    @classmethod
    def unspecified(cls) -> "IntervalSpec":
        return cls(kind=IntervalKind.UNSPECIFIED)

    def to_dict(self) -> dict:
        data: dict = {"kind": self.kind.value}
        if self.kind == IntervalKind.RELATIVE:
            data["amount"] = self.amount
            data["unit"] = self.unit.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "IntervalSpec":
        try:
            kind = IntervalKind(data.get("kind", "unspecified"))
            unit = IntervalUnit(data["unit"]) if data.get("unit") is not None else None
        except ValueError as e:
            raise ValidationError(f"Invalid interval spec: {data!r}") from e
        return cls(kind=kind, amount=data.get("amount"), unit=unit)


@dataclass(frozen=True)
class FollowUpRequest:
    """Structured output of the note-classification collaborator."""

    patient_identity: PatientIdentity
    follow_up_required: bool
    interval_spec: IntervalSpec
    reason_text: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    request_id: str = field(default_factory=lambda: str(uuid4()))


def derive_request_id(
    patient_identity: PatientIdentity,
    interval_spec: IntervalSpec,
    reason_text: str = "",
    created_at: Optional[datetime] = None,
) -> str:
    """Stable initiation ID for a request delivered without one.

    Redeliveries of the same event carry the same content, so they map to
    the same ID and are recognized as duplicates.
    """
    content = {
        "identity": str(patient_identity),
        "interval": interval_spec.to_dict(),
        "reason": reason_text.strip(),
        "created_at": created_at.astimezone(timezone.utc).isoformat() if created_at else None,
    }
    digest = hashlib.sha256(json.dumps(content, sort_keys=True).encode("utf-8")).hexdigest()
    return f"derived-{digest[:32]}"


@dataclass(frozen=True)
class BookedAppointment:
    """A committed calendar event. Written once per session."""

    session_key: str
    slot: TimeInterval
    calendar_event_id: str
    summary_text: str
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "session_key": self.session_key,
            "slot": self.slot.to_dict(),
            "calendar_event_id": self.calendar_event_id,
            "summary_text": self.summary_text,
            "created_at": self.created_at.isoformat(),
        }
