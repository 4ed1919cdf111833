"""
Negotiation session model.

One record per patient key, owned by the session store. Mutated only
through the methods below so that the phase rules and the
``selected_slot in proposed_slots`` invariant hold on every write.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from followup.core.errors import InvalidTransition
from followup.core.scheduling.state import (
    EscalationReason,
    NegotiationPhase,
    can_transition,
    is_terminal_phase,
)
from followup.core.scheduling.types import (
    CandidateSlot,
    FollowUpRequest,
    IntervalSpec,
    TimeInterval,
)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class NegotiationSession:
    """Durable negotiation state for one patient."""

    # Identifiers
    session_key: str
    initiation_id: str = field(default_factory=lambda: str(uuid4()))
    identity_verified: bool = True

    # Protocol state
    phase: NegotiationPhase = NegotiationPhase.INITIATED
    proposed_slots: list[CandidateSlot] = field(default_factory=list)
    selected_slot: Optional[CandidateSlot] = None
    attempt_count: int = 0
    regeneration_count: int = 0
    ordinal_high_water: int = 0  # highest ordinal ever shown in this session

    # Request context
    reason_text: str = ""
    interval_spec: IntervalSpec = field(default_factory=IntervalSpec.unspecified)
    window: Optional[TimeInterval] = None

    # Outcome
    calendar_event_id: Optional[str] = None
    escalation_reason: Optional[EscalationReason] = None

    # Metadata
    last_inbound_at: Optional[datetime] = None
    revision: int = 0  # bumped by the store on every successful write
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    expires_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def open(
        cls,
        request: FollowUpRequest,
        window: TimeInterval,
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> "NegotiationSession":
        """Create a fresh INITIATED session from a follow-up request."""
        now = now or _utcnow()
        return cls(
            session_key=str(request.patient_identity),
            initiation_id=request.request_id,
            identity_verified=request.patient_identity.verified,
            reason_text=request.reason_text,
            interval_spec=request.interval_spec,
            window=window,
            created_at=now,
            last_activity_at=now,
            expires_at=now + ttl,
        )

    @property
    def is_terminal(self) -> bool:
        return is_terminal_phase(self.phase)

    def transition_to(self, phase: NegotiationPhase, now: Optional[datetime] = None) -> None:
        """Move to a new phase, enforcing the transition table."""
        if not can_transition(self.phase, phase):
            raise InvalidTransition(
                f"Session {self.session_key}: {self.phase.value} -> {phase.value} not allowed"
            )
        self.phase = phase
        self.last_activity_at = now or _utcnow()

    def propose(
        self,
        candidates: list[CandidateSlot],
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> list[CandidateSlot]:
        """Install a new proposal batch and enter PROPOSED.

        Ordinals continue above every ordinal already shown in this
        session, so a batch never reuses a number from an earlier one.
        """
        now = now or _utcnow()
        base = self.ordinal_high_water
        batch = [
            CandidateSlot(ordinal=base + i, interval=slot.interval)
            for i, slot in enumerate(candidates, 1)
        ]
        self.transition_to(NegotiationPhase.PROPOSED, now)
        self.proposed_slots = batch
        self.selected_slot = None
        self.ordinal_high_water = base + len(batch)
        self.expires_at = now + ttl
        return batch

    def select(self, slot: CandidateSlot, now: Optional[datetime] = None) -> None:
        """Record the patient's choice and enter AWAITING_CONFIRMATION."""
        if slot not in self.proposed_slots:
            raise InvalidTransition(
                f"Session {self.session_key}: slot {slot.ordinal} was not proposed"
            )
        self.transition_to(NegotiationPhase.AWAITING_CONFIRMATION, now)
        self.selected_slot = slot

    def claim_is_stale(self, timeout: timedelta, now: Optional[datetime] = None) -> bool:
        """True if a booking claim has sat unfinished for longer than ``timeout``."""
        now = now or _utcnow()
        return (
            self.phase == NegotiationPhase.AWAITING_CONFIRMATION
            and self.selected_slot is not None
            and now - self.last_activity_at > timeout
        )

    def reclaim(self, now: Optional[datetime] = None) -> None:
        """Take over an unfinished booking claim. The phase is unchanged."""
        if self.phase != NegotiationPhase.AWAITING_CONFIRMATION or self.selected_slot is None:
            raise InvalidTransition(
                f"Session {self.session_key}: no booking claim to take over in {self.phase.value}"
            )
        self.last_activity_at = now or _utcnow()

    def record_unresolved_reply(self, now: Optional[datetime] = None) -> int:
        """Count a reply that did not resolve to a slot."""
        self.transition_to(NegotiationPhase.PROPOSED, now)
        self.attempt_count += 1
        return self.attempt_count

    def mark_booked(self, calendar_event_id: str, now: Optional[datetime] = None) -> None:
        self.transition_to(NegotiationPhase.BOOKED, now)
        self.calendar_event_id = calendar_event_id

    def escalate(self, reason: EscalationReason, now: Optional[datetime] = None) -> None:
        self.transition_to(NegotiationPhase.ESCALATED, now)
        self.escalation_reason = reason

    def expire(self, now: Optional[datetime] = None) -> None:
        self.transition_to(NegotiationPhase.EXPIRED, now)
        self.escalation_reason = EscalationReason.SESSION_EXPIRED

    def slot_by_ordinal(self, ordinal: int) -> Optional[CandidateSlot]:
        for slot in self.proposed_slots:
            if slot.ordinal == ordinal:
                return slot
        return None

    def to_json(self) -> str:
        """Convert to JSON string for Redis storage."""
        data = {
            "session_key": self.session_key,
            "initiation_id": self.initiation_id,
            "identity_verified": self.identity_verified,
            "phase": self.phase.value,
            "proposed_slots": [s.to_dict() for s in self.proposed_slots],
            "selected_slot": self.selected_slot.to_dict() if self.selected_slot else None,
            "attempt_count": self.attempt_count,
            "regeneration_count": self.regeneration_count,
            "ordinal_high_water": self.ordinal_high_water,
            "reason_text": self.reason_text,
            "interval_spec": self.interval_spec.to_dict(),
            "window": self.window.to_dict() if self.window else None,
            "calendar_event_id": self.calendar_event_id,
            "escalation_reason": self.escalation_reason.value if self.escalation_reason else None,
            "last_inbound_at": _iso(self.last_inbound_at),
            "revision": self.revision,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }
        return json.dumps(data)

    @classmethod
    def from_json(cls, json_str: str) -> "NegotiationSession":
        """Create from JSON string."""
        data = json.loads(json_str)
        selected = data.get("selected_slot")
        window = data.get("window")
        reason = data.get("escalation_reason")
        return cls(
            session_key=data["session_key"],
            initiation_id=data["initiation_id"],
            identity_verified=data.get("identity_verified", True),
            phase=NegotiationPhase(data["phase"]),
            proposed_slots=[CandidateSlot.from_dict(s) for s in data.get("proposed_slots", [])],
            selected_slot=CandidateSlot.from_dict(selected) if selected else None,
            attempt_count=data.get("attempt_count", 0),
            regeneration_count=data.get("regeneration_count", 0),
            ordinal_high_water=data.get("ordinal_high_water", 0),
            reason_text=data.get("reason_text", ""),
            interval_spec=IntervalSpec.from_dict(data.get("interval_spec", {})),
            window=TimeInterval.from_dict(window) if window else None,
            calendar_event_id=data.get("calendar_event_id"),
            escalation_reason=EscalationReason(reason) if reason else None,
            last_inbound_at=_from_iso(data.get("last_inbound_at")),
            revision=data.get("revision", 0),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity_at=datetime.fromisoformat(data["last_activity_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return json.loads(self.to_json())
