"""Negotiation phases and the transitions allowed between them."""

from enum import Enum
from typing import Set


class NegotiationPhase(str, Enum):
    """Phases of one slot negotiation."""

    INITIATED = "initiated"
    PROPOSED = "proposed"
    AWAITING_CONFIRMATION = "awaiting_confirmation"

    # Terminal
    BOOKED = "booked"
    EXPIRED = "expired"
    ESCALATED = "escalated"


class EscalationReason(str, Enum):
    """Why a negotiation was handed to a human."""

    NO_AVAILABILITY = "no_availability"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CHANNEL_WINDOW_CLOSED = "channel_window_closed"
    BOOKING_CONFLICT_EXHAUSTED = "booking_conflict_exhausted"
    SESSION_EXPIRED = "session_expired"
    CALENDAR_UNAVAILABLE = "calendar_unavailable"
    PATIENT_UNREACHABLE = "patient_unreachable"


TERMINAL_PHASES: frozenset = frozenset({
    NegotiationPhase.BOOKED,
    NegotiationPhase.EXPIRED,
    NegotiationPhase.ESCALATED,
})


# Valid phase transitions
VALID_TRANSITIONS: dict[NegotiationPhase, Set[NegotiationPhase]] = {
    NegotiationPhase.INITIATED: {
        NegotiationPhase.PROPOSED,
        NegotiationPhase.ESCALATED,
        NegotiationPhase.EXPIRED,
    },
    NegotiationPhase.PROPOSED: {
        NegotiationPhase.PROPOSED,  # re-prompt
        NegotiationPhase.AWAITING_CONFIRMATION,
        NegotiationPhase.ESCALATED,
        NegotiationPhase.EXPIRED,
    },
    NegotiationPhase.AWAITING_CONFIRMATION: {
        NegotiationPhase.BOOKED,
        NegotiationPhase.PROPOSED,  # slot taken, regenerated
        NegotiationPhase.ESCALATED,
        NegotiationPhase.EXPIRED,
    },
    NegotiationPhase.BOOKED: set(),
    NegotiationPhase.EXPIRED: set(),
    NegotiationPhase.ESCALATED: set(),
}


def can_transition(from_phase: NegotiationPhase, to_phase: NegotiationPhase) -> bool:
    """Check if a phase transition is valid."""
    return to_phase in VALID_TRANSITIONS.get(from_phase, set())


def is_terminal_phase(phase: NegotiationPhase) -> bool:
    """Check if phase is terminal (no further reply processing)."""
    return phase in TERMINAL_PHASES
