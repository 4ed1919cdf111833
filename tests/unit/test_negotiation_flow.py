"""Tests for the slot negotiation state machine."""

from datetime import timedelta

import pytest

from followup.core.errors import InvalidTransition
from followup.core.identity import PatientIdentity
from followup.core.scheduling.flow import ActionType, NegotiationFlow
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
    IntervalUnit,
    TimeInterval,
)
from followup.core.session.models import NegotiationSession
from tests.fakes import CLINIC_TZ, local, utc

NOW = utc(2024, 12, 30, 14)
TTL = timedelta(hours=72)


def candidates(*days) -> list[CandidateSlot]:
    """9:00-9:30 local candidates on the given February 2025 days."""
    return [
        CandidateSlot(
            ordinal=i,
            interval=TimeInterval(start=local(2025, 2, day, 9), end=local(2025, 2, day, 9, 30)),
        )
        for i, day in enumerate(days, 1)
    ]


@pytest.fixture
def flow():
    return NegotiationFlow(
        max_reply_attempts=2,
        max_regenerations=2,
        session_ttl=TTL,
        tz=CLINIC_TZ,
    )


@pytest.fixture
def session():
    request = FollowUpRequest(
        patient_identity=PatientIdentity("+15550102000"),
        follow_up_required=True,
        interval_spec=IntervalSpec.relative(6, IntervalUnit.WEEKS),
        reason_text="diabetes check",
        created_at=NOW,
        request_id="req-1",
    )
    window = TimeInterval(start=local(2025, 2, 3), end=local(2025, 2, 17))
    return NegotiationSession.open(request, window, TTL, NOW)


@pytest.fixture
def proposed(flow, session):
    flow.open(session, candidates(3, 4, 5), NOW)
    return session


class TestTransitionTable:
    """Test the phase transition table."""

    def test_happy_path_allowed(self):
        """Test the main path is allowed."""
        assert can_transition(NegotiationPhase.INITIATED, NegotiationPhase.PROPOSED)
        assert can_transition(NegotiationPhase.PROPOSED, NegotiationPhase.AWAITING_CONFIRMATION)
        assert can_transition(NegotiationPhase.AWAITING_CONFIRMATION, NegotiationPhase.BOOKED)

    def test_regeneration_allowed(self):
        """Test AWAITING_CONFIRMATION can return to PROPOSED."""
        assert can_transition(NegotiationPhase.AWAITING_CONFIRMATION, NegotiationPhase.PROPOSED)

    def test_cannot_skip_selection(self):
        """Test PROPOSED cannot jump straight to BOOKED."""
        assert not can_transition(NegotiationPhase.PROPOSED, NegotiationPhase.BOOKED)
        assert not can_transition(NegotiationPhase.INITIATED, NegotiationPhase.BOOKED)

    @pytest.mark.parametrize(
        "terminal",
        [NegotiationPhase.BOOKED, NegotiationPhase.EXPIRED, NegotiationPhase.ESCALATED],
    )
    def test_terminal_phases_are_final(self, terminal):
        """Test nothing leaves a terminal phase."""
        assert is_terminal_phase(terminal)
        for phase in NegotiationPhase:
            assert not can_transition(terminal, phase)


class TestOpen:
    """Test opening a negotiation."""

    def test_open_proposes(self, flow, session):
        """Test candidates move the session to PROPOSED."""
        action = flow.open(session, candidates(3, 4, 5), NOW)

        assert action.action_type == ActionType.PROPOSE
        assert session.phase == NegotiationPhase.PROPOSED
        assert [slot.ordinal for slot in action.slots] == [1, 2, 3]
        assert session.expires_at == NOW + TTL

    def test_open_without_candidates_escalates(self, flow, session):
        """Test an empty candidate list escalates with no_availability."""
        action = flow.open(session, [], NOW)

        assert action.action_type == ActionType.ESCALATE
        assert action.escalation_reason == EscalationReason.NO_AVAILABILITY
        assert session.phase == NegotiationPhase.ESCALATED


class TestHandleReply:
    """Test reply handling."""

    def test_clear_reply_selects(self, flow, proposed):
        """Test a resolvable reply moves to AWAITING_CONFIRMATION."""
        action = flow.handle_reply(proposed, "2", NOW)

        assert action.action_type == ActionType.BOOK
        assert action.selected.ordinal == 2
        assert proposed.phase == NegotiationPhase.AWAITING_CONFIRMATION
        assert proposed.selected_slot in proposed.proposed_slots

    def test_unresolved_reply_reprompts_same_slots(self, flow, proposed):
        """Test the first unresolved reply re-prompts without changing slots."""
        before = list(proposed.proposed_slots)

        action = flow.handle_reply(proposed, "banana", NOW)

        assert action.action_type == ActionType.REPROMPT
        assert action.ambiguity.reason == "no_match"
        assert action.slots == before
        assert proposed.proposed_slots == before
        assert proposed.attempt_count == 1
        assert proposed.phase == NegotiationPhase.PROPOSED

    def test_attempts_exhausted_escalates(self, flow, proposed):
        """Test the second unresolved reply escalates."""
        flow.handle_reply(proposed, "banana", NOW)

        action = flow.handle_reply(proposed, "1 or 2", NOW)

        assert action.action_type == ActionType.ESCALATE
        assert action.escalation_reason == EscalationReason.RETRIES_EXHAUSTED
        assert proposed.attempt_count == 2
        assert proposed.phase == NegotiationPhase.ESCALATED

    def test_reprompt_then_clear_reply(self, flow, proposed):
        """Test a clear reply after a re-prompt still books."""
        flow.handle_reply(proposed, "banana", NOW)

        action = flow.handle_reply(proposed, "3", NOW)

        assert action.action_type == ActionType.BOOK
        assert action.selected.ordinal == 3

    @pytest.mark.parametrize(
        "phase",
        [NegotiationPhase.INITIATED, NegotiationPhase.AWAITING_CONFIRMATION, NegotiationPhase.BOOKED],
    )
    def test_reply_outside_proposed_ignored(self, flow, session, phase):
        """Test replies are ignored unless a proposal is outstanding."""
        session.phase = phase

        action = flow.handle_reply(session, "1", NOW)

        assert action.action_type == ActionType.IGNORE
        assert session.phase == phase
        assert session.attempt_count == 0


class TestRaceLost:
    """Test regeneration after a lost slot race."""

    def test_regenerates_with_fresh_ordinals(self, flow, proposed):
        """Test a new batch gets ordinals above the first batch."""
        flow.handle_reply(proposed, "1", NOW)

        action = flow.handle_race_lost(proposed, candidates(6, 7, 10), NOW)

        assert action.action_type == ActionType.REGENERATE
        assert [slot.ordinal for slot in action.slots] == [4, 5, 6]
        assert proposed.phase == NegotiationPhase.PROPOSED
        assert proposed.selected_slot is None
        assert proposed.regeneration_count == 1

    def test_regeneration_limit_escalates(self, flow, proposed):
        """Test the third lost race escalates with booking_conflict_exhausted."""
        for _ in range(2):
            flow.handle_reply(proposed, str(proposed.proposed_slots[0].ordinal), NOW)
            flow.handle_race_lost(proposed, candidates(6, 7), NOW)
        flow.handle_reply(proposed, str(proposed.proposed_slots[0].ordinal), NOW)

        action = flow.handle_race_lost(proposed, candidates(11, 12), NOW)

        assert action.action_type == ActionType.ESCALATE
        assert action.escalation_reason == EscalationReason.BOOKING_CONFLICT_EXHAUSTED

    def test_no_candidates_left_escalates(self, flow, proposed):
        """Test a lost race with nothing else free escalates."""
        flow.handle_reply(proposed, "1", NOW)

        action = flow.handle_race_lost(proposed, [], NOW)

        assert action.escalation_reason == EscalationReason.NO_AVAILABILITY
        assert proposed.phase == NegotiationPhase.ESCALATED


class TestCompletion:
    """Test booking, expiry and failure."""

    def test_booked(self, flow, proposed):
        """Test a created event closes the session as BOOKED."""
        flow.handle_reply(proposed, "2", NOW)

        action = flow.handle_booked(proposed, "evt-1", NOW)

        assert action.action_type == ActionType.CONFIRM
        assert action.selected.ordinal == 2
        assert proposed.phase == NegotiationPhase.BOOKED
        assert proposed.calendar_event_id == "evt-1"

    def test_cannot_book_without_selection(self, flow, proposed):
        """Test booking straight from PROPOSED is rejected."""
        with pytest.raises(InvalidTransition):
            flow.handle_booked(proposed, "evt-1", NOW)

    def test_expire(self, flow, proposed):
        """Test expiry moves to EXPIRED with session_expired."""
        action = flow.expire(proposed, NOW + TTL)

        assert action.action_type == ActionType.EXPIRE
        assert proposed.phase == NegotiationPhase.EXPIRED
        assert proposed.escalation_reason == EscalationReason.SESSION_EXPIRED

    def test_expire_terminal_rejected(self, flow, proposed):
        """Test a terminal session cannot expire."""
        flow.expire(proposed, NOW)

        with pytest.raises(InvalidTransition):
            flow.expire(proposed, NOW)

    def test_failure_escalates(self, flow, proposed):
        """Test capability failures escalate with the given reason."""
        action = flow.handle_failure(proposed, EscalationReason.CALENDAR_UNAVAILABLE, NOW)

        assert action.action_type == ActionType.ESCALATE
        assert proposed.escalation_reason == EscalationReason.CALENDAR_UNAVAILABLE
