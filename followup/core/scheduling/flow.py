"""
Slot Negotiation State Machine.

Decides the next phase and action for a session given an event (opened
with candidates, patient reply, slot lost, booking done). It mutates the
session in memory only; the coordinator persists the result with a
compare-and-swap write and then performs the side effect.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Optional

from followup.config import settings
from followup.core.errors import AmbiguousInput
from followup.core.scheduling.replies import resolve_selection
from followup.core.scheduling.state import EscalationReason, NegotiationPhase
from followup.core.scheduling.types import CandidateSlot
from followup.core.session.models import NegotiationSession

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ActionType(str, Enum):
    """Side effect the coordinator performs after persisting."""

    PROPOSE = "propose"
    REPROMPT = "reprompt"
    BOOK = "book"
    REGENERATE = "regenerate"
    CONFIRM = "confirm"
    ESCALATE = "escalate"
    EXPIRE = "expire"
    IGNORE = "ignore"


@dataclass
class FlowAction:
    """Action determined by the state machine."""

    action_type: ActionType
    next_phase: NegotiationPhase
    slots: list[CandidateSlot] = field(default_factory=list)
    selected: Optional[CandidateSlot] = None
    escalation_reason: Optional[EscalationReason] = None
    ambiguity: Optional[AmbiguousInput] = None
    note: str = ""


class NegotiationFlow:
    """
    Per-session negotiation protocol.

    INITIATED -> PROPOSED -> AWAITING_CONFIRMATION -> BOOKED, with
    ESCALATED and EXPIRED as terminal side channels.
    """

    def __init__(
        self,
        max_reply_attempts: Optional[int] = None,
        max_regenerations: Optional[int] = None,
        session_ttl: Optional[timedelta] = None,
        tz: Optional[tzinfo] = None,
    ):
        """Initialize flow.

        Args:
            max_reply_attempts: Unresolved replies tolerated before escalating
            max_regenerations: Lost slot races tolerated before escalating
            session_ttl: How long a proposal stays actionable
            tz: Timezone slot times are shown in
        """
        self.max_reply_attempts = max_reply_attempts or settings.max_reply_attempts
        self.max_regenerations = (
            settings.max_regenerations if max_regenerations is None else max_regenerations
        )
        self.session_ttl = session_ttl or settings.session_ttl
        self.tz = tz or settings.tz

    def open(
        self,
        session: NegotiationSession,
        candidates: list[CandidateSlot],
        now: Optional[datetime] = None,
    ) -> FlowAction:
        """Move a new session to PROPOSED, or ESCALATED if nothing is free."""
        now = now or _utcnow()

        if not candidates:
            return self._escalate(session, EscalationReason.NO_AVAILABILITY, now)

        batch = session.propose(candidates, self.session_ttl, now)
        logger.info(f"Session {session.session_key}: proposing {len(batch)} slots")
        return FlowAction(
            action_type=ActionType.PROPOSE,
            next_phase=session.phase,
            slots=batch,
        )

    def handle_reply(
        self,
        session: NegotiationSession,
        body: str,
        now: Optional[datetime] = None,
    ) -> FlowAction:
        """Interpret a patient reply against the proposed slots."""
        now = now or _utcnow()

        if session.phase != NegotiationPhase.PROPOSED:
            return FlowAction(
                action_type=ActionType.IGNORE,
                next_phase=session.phase,
                note=f"reply while {session.phase.value}",
            )

        try:
            slot = resolve_selection(body, session.proposed_slots, self.tz)
        except AmbiguousInput as e:
            attempts = session.record_unresolved_reply(now)
            if attempts >= self.max_reply_attempts:
                logger.info(
                    f"Session {session.session_key}: {attempts} unresolved replies, escalating"
                )
                return self._escalate(session, EscalationReason.RETRIES_EXHAUSTED, now)

            logger.info(
                f"Session {session.session_key}: reply unresolved ({e.reason}), "
                f"attempt {attempts}/{self.max_reply_attempts}"
            )
            return FlowAction(
                action_type=ActionType.REPROMPT,
                next_phase=session.phase,
                slots=list(session.proposed_slots),
                ambiguity=e,
            )

        session.select(slot, now)
        logger.info(f"Session {session.session_key}: patient selected option {slot.ordinal}")
        return FlowAction(
            action_type=ActionType.BOOK,
            next_phase=session.phase,
            selected=slot,
        )

    def handle_race_lost(
        self,
        session: NegotiationSession,
        candidates: list[CandidateSlot],
        now: Optional[datetime] = None,
    ) -> FlowAction:
        """Selected slot was taken: propose a fresh batch or give up."""
        now = now or _utcnow()

        if session.regeneration_count >= self.max_regenerations:
            return self._escalate(session, EscalationReason.BOOKING_CONFLICT_EXHAUSTED, now)
        if not candidates:
            return self._escalate(session, EscalationReason.NO_AVAILABILITY, now)

        session.regeneration_count += 1
        batch = session.propose(candidates, self.session_ttl, now)
        logger.info(
            f"Session {session.session_key}: slot taken, regenerated "
            f"{len(batch)} slots (round {session.regeneration_count})"
        )
        return FlowAction(
            action_type=ActionType.REGENERATE,
            next_phase=session.phase,
            slots=batch,
        )

    def handle_booked(
        self,
        session: NegotiationSession,
        calendar_event_id: str,
        now: Optional[datetime] = None,
    ) -> FlowAction:
        """Calendar event created: close the session."""
        selected = session.selected_slot
        session.mark_booked(calendar_event_id, now or _utcnow())
        logger.info(f"Session {session.session_key}: booked as {calendar_event_id}")
        return FlowAction(
            action_type=ActionType.CONFIRM,
            next_phase=session.phase,
            selected=selected,
        )

    def handle_failure(
        self,
        session: NegotiationSession,
        reason: EscalationReason,
        now: Optional[datetime] = None,
    ) -> FlowAction:
        """A precondition or capability failed beyond recovery."""
        return self._escalate(session, reason, now or _utcnow())

    def expire(
        self,
        session: NegotiationSession,
        now: Optional[datetime] = None,
    ) -> FlowAction:
        """TTL passed with no resolution."""
        session.expire(now or _utcnow())
        logger.info(f"Session {session.session_key}: expired")
        return FlowAction(
            action_type=ActionType.EXPIRE,
            next_phase=session.phase,
            escalation_reason=EscalationReason.SESSION_EXPIRED,
        )

    def _escalate(
        self,
        session: NegotiationSession,
        reason: EscalationReason,
        now: datetime,
    ) -> FlowAction:
        session.escalate(reason, now)
        logger.warning(f"Session {session.session_key}: escalated ({reason.value})")
        return FlowAction(
            action_type=ActionType.ESCALATE,
            next_phase=session.phase,
            escalation_reason=reason,
        )


# Singleton
_flow: Optional[NegotiationFlow] = None


def get_negotiation_flow() -> NegotiationFlow:
    """Get singleton NegotiationFlow."""
    global _flow
    if _flow is None:
        _flow = NegotiationFlow()
    return _flow
