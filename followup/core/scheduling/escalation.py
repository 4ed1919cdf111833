"""
Escalation Reporter.

Hands a negotiation to staff when it cannot finish automatically. The
durable record is mandatory (retried, then logged at CRITICAL with the
full payload so it can be recovered from logs); the patient notice is
best-effort and only sent while the channel is reachable.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from followup.config import settings
from followup.core.errors import CapabilityFailure
from followup.core.identity import PatientIdentity
from followup.core.retry import call_with_retry
from followup.core.scheduling.messages import MessageComposer
from followup.core.scheduling.state import EscalationReason
from followup.core.session.models import NegotiationSession
from followup.infra.messaging import MessagingClient, get_messaging_client
from followup.infra.records import RecordStore, get_record_store
from followup.models.database import RecordKind

logger = logging.getLogger(__name__)

UNREACHABLE_REASONS = frozenset({
    EscalationReason.CHANNEL_WINDOW_CLOSED,
    EscalationReason.PATIENT_UNREACHABLE,
})


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class EscalationReporter:
    """Records escalations and review flags, and tells the patient."""

    def __init__(
        self,
        records: Optional[RecordStore] = None,
        messenger: Optional[MessagingClient] = None,
        composer: Optional[MessageComposer] = None,
        channel_window: Optional[timedelta] = None,
    ):
        self._records = records
        self._messenger = messenger
        self.composer = composer or MessageComposer()
        self.channel_window = channel_window or settings.channel_window

    def _get_records(self) -> RecordStore:
        if self._records is None:
            self._records = get_record_store()
        return self._records

    def _get_messenger(self) -> MessagingClient:
        if self._messenger is None:
            self._messenger = get_messaging_client()
        return self._messenger

    def channel_reachable(
        self,
        session: NegotiationSession,
        reason: EscalationReason,
        now: Optional[datetime] = None,
    ) -> bool:
        """Whether a notice may be sent for this escalation."""
        if reason in UNREACHABLE_REASONS:
            return False
        if session.last_inbound_at is None:
            return True
        return (now or _utcnow()) - session.last_inbound_at <= self.channel_window

    async def report(
        self,
        session: NegotiationSession,
        reason: EscalationReason,
        context: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Record an escalation and notify the patient where possible.

        Never raises.

        Args:
            session: Escalated (or expired) session
            reason: Why the negotiation stopped
            context: Extra detail for staff
            now: Current time (for the reachability check)

        Returns:
            True if the patient was sent the handoff notice
        """
        payload = {
            "phase": session.phase.value,
            "attempt_count": session.attempt_count,
            "regeneration_count": session.regeneration_count,
            "proposed_slots": [slot.to_dict() for slot in session.proposed_slots],
            "selected_slot": session.selected_slot.to_dict() if session.selected_slot else None,
            "reason_text": session.reason_text,
            **(context or {}),
        }

        logger.warning(f"Escalating {session.session_key}: {reason.value}")

        record_id = None
        try:
            record_id = await call_with_retry(
                lambda: self._get_records().save_escalation(
                    session_key=session.session_key,
                    reason=reason.value,
                    context=payload,
                    initiation_id=session.initiation_id,
                ),
                "escalation record",
            )
        except CapabilityFailure as e:
            logger.critical(
                f"Escalation record lost for {session.session_key}: {e} | "
                + json.dumps({
                    "session_key": session.session_key,
                    "initiation_id": session.initiation_id,
                    "reason": reason.value,
                    "context": payload,
                })
            )

        if not self.channel_reachable(session, reason, now):
            logger.info(f"Not notifying {session.session_key}: channel unreachable")
            return False

        identity = PatientIdentity.from_key(session.session_key)
        text = self.composer.escalation_notice(reason)
        try:
            await call_with_retry(
                lambda: self._get_messenger().send_message(identity, text),
                "escalation notice",
            )
        except CapabilityFailure as e:
            logger.warning(f"Escalation notice to {session.session_key} failed: {e}")
            return False

        if record_id:
            try:
                await self._get_records().mark_notified(record_id)
            except CapabilityFailure as e:
                logger.warning(f"Could not mark escalation {record_id} notified: {e}")
        return True

    async def flag(
        self,
        session_key: str,
        reason: str,
        context: Optional[dict] = None,
        initiation_id: Optional[str] = None,
    ) -> None:
        """Record a review flag that does not stop the negotiation. Never raises."""
        logger.info(f"Flagging {session_key} for review: {reason}")
        try:
            await call_with_retry(
                lambda: self._get_records().save_escalation(
                    session_key=session_key,
                    reason=reason,
                    context=context,
                    initiation_id=initiation_id,
                    kind=RecordKind.FLAG,
                ),
                "review flag",
            )
        except CapabilityFailure as e:
            logger.error(f"Review flag for {session_key} not recorded: {e}")


# Singleton
_reporter: Optional[EscalationReporter] = None


def get_escalation_reporter() -> EscalationReporter:
    """Get singleton EscalationReporter."""
    global _reporter
    if _reporter is None:
        _reporter = EscalationReporter()
    return _reporter
