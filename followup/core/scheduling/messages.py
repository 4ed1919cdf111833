"""
Patient-facing message templates.

All text sent to patients comes from here. Slot times are always shown in
the clinic timezone so a clock-time reply ("the 10:30 one") can be matched
back against what the patient actually saw.
"""

from datetime import tzinfo
from typing import Optional, Sequence

from followup.config import settings
from followup.core.scheduling.state import EscalationReason
from followup.core.scheduling.types import CandidateSlot, TimeInterval


class MessageComposer:
    """Template renderer for outbound messages."""

    def __init__(self, tz: Optional[tzinfo] = None, clinic_name: Optional[str] = None):
        self.tz = tz or settings.tz
        self.clinic_name = clinic_name or settings.clinic_name

    def format_time(self, interval: TimeInterval) -> str:
        """Render a slot start like "Tue, Feb 4 at 10:00 AM"."""
        local = interval.start.astimezone(self.tz)
        clock = local.strftime("%I:%M %p").lstrip("0")
        return f"{local.strftime('%a, %b')} {local.day} at {clock}"

    def format_slots(self, slots: Sequence[CandidateSlot]) -> str:
        """Numbered list of slots, one per line."""
        return "\n".join(f"{slot.ordinal}. {self.format_time(slot.interval)}" for slot in slots)

    def _reply_hint(self, slots: Sequence[CandidateSlot]) -> str:
        ordinals = [str(slot.ordinal) for slot in slots]
        if len(ordinals) == 1:
            return f"Reply {ordinals[0]} to book it."
        return f"Reply {', '.join(ordinals[:-1])} or {ordinals[-1]}."

    def proposal(self, slots: Sequence[CandidateSlot], reason_text: str = "") -> str:
        """First message of a negotiation."""
        reason = f" for your {reason_text}" if reason_text else ""
        return (
            f"Hi, this is {self.clinic_name}. Your provider would like to see you again{reason}. "
            f"These times are available:\n"
            f"{self.format_slots(slots)}\n"
            f"Reply with the number of the time that works best. {self._reply_hint(slots)}"
        )

    def reprompt(
        self,
        slots: Sequence[CandidateSlot],
        suggested_ordinal: Optional[int] = None,
    ) -> str:
        """Clarifying re-prompt after an unresolved reply. Same slots."""
        lines = ["Sorry, I couldn't tell which time you meant."]
        if suggested_ordinal is not None:
            lines.append(f"Did you mean option {suggested_ordinal}? Reply {suggested_ordinal} to confirm.")
        lines.append(self.format_slots(slots))
        lines.append(f"Please reply with just the number. {self._reply_hint(slots)}")
        return "\n".join(lines)

    def slot_taken(self, slots: Sequence[CandidateSlot]) -> str:
        """Selected slot was taken; new batch with fresh numbers."""
        return (
            "Sorry, that time was just taken. Here are some other options:\n"
            f"{self.format_slots(slots)}\n"
            f"{self._reply_hint(slots)}"
        )

    def booking_confirmed(self, slot: CandidateSlot) -> str:
        return (
            f"You're booked for {self.format_time(slot.interval)}. "
            f"We look forward to seeing you."
        )

    def escalation_notice(self, reason: EscalationReason) -> str:
        """Patient-facing handoff notice."""
        if reason == EscalationReason.NO_AVAILABILITY:
            opener = "We couldn't find an open time that fits your follow-up."
        elif reason == EscalationReason.SESSION_EXPIRED:
            opener = "We didn't hear back about your follow-up appointment."
        else:
            opener = "We weren't able to finish scheduling your follow-up by message."
        return f"{opener} A member of our team will contact you to arrange it."

    def no_pending_appointment(self) -> str:
        return (
            f"We don't have an appointment request waiting for you. "
            f"If you need to schedule a visit, please call {self.clinic_name}."
        )
