"""
Scheduling Module

Availability reconciliation, the reply grammar, and the negotiation
phases. The coordinator, flow and reaper live in their own submodules
and are imported from there:

    from followup.core.scheduling.coordinator import get_booking_coordinator

Usage:
    from followup.core.scheduling import find_candidate_slots, TimeInterval

    slots = find_candidate_slots(
        busy_intervals=busy,
        window=TimeInterval(start, end),
        working_hours=settings.working_hours,
        slot_duration=settings.slot_duration,
        max_candidates=3,
    )
"""

# Value types
from followup.core.scheduling.types import (
    BookedAppointment,
    CandidateSlot,
    FollowUpRequest,
    IntervalKind,
    IntervalSpec,
    IntervalUnit,
    TimeInterval,
    WorkingHours,
)

# Phases
from followup.core.scheduling.state import (
    TERMINAL_PHASES,
    EscalationReason,
    NegotiationPhase,
    can_transition,
    is_terminal_phase,
)

# Availability Reconciler
from followup.core.scheduling.availability import (
    derive_window,
    find_candidate_slots,
    is_slot_free,
    merge_intervals,
)

# Reply grammar
from followup.core.scheduling.replies import resolve_selection

__all__ = [
    # Types
    "BookedAppointment",
    "CandidateSlot",
    "FollowUpRequest",
    "IntervalKind",
    "IntervalSpec",
    "IntervalUnit",
    "TimeInterval",
    "WorkingHours",
    # Phases
    "TERMINAL_PHASES",
    "EscalationReason",
    "NegotiationPhase",
    "can_transition",
    "is_terminal_phase",
    # Availability
    "derive_window",
    "find_candidate_slots",
    "is_slot_free",
    "merge_intervals",
    # Replies
    "resolve_selection",
]
