"""
Booking Coordinator - Main Orchestrator.

Runs the two entry flows:
- on_initiation: a follow-up request from the note classifier opens a
  negotiation and sends the proposal
- on_reply: an inbound patient message advances the negotiation

Every transition is written to the session store with a compare-and-swap
BEFORE its side effect (send, book), so a reply that loses a race never
emits anything. The write that enters AWAITING_CONFIRMATION is the
booking claim: only its winner talks to the calendar.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Optional, Sequence, Union

from followup.config import settings
from followup.core.errors import (
    CapabilityFailure,
    ChannelWindowClosed,
    RaceLost,
    SessionAlreadyExists,
    SessionConflict,
    SessionNotFound,
)
from followup.core.identity import PatientIdentity, normalize_identity
from followup.core.retry import call_with_retry
from followup.core.scheduling.availability import (
    derive_window,
    find_candidate_slots,
    is_slot_free,
)
from followup.core.scheduling.escalation import EscalationReporter, get_escalation_reporter
from followup.core.scheduling.flow import (
    ActionType,
    FlowAction,
    NegotiationFlow,
    get_negotiation_flow,
)
from followup.core.scheduling.hints import ReplyHintProvider, get_reply_hint_provider
from followup.core.scheduling.messages import MessageComposer
from followup.core.scheduling.state import EscalationReason, NegotiationPhase
from followup.core.scheduling.types import (
    BookedAppointment,
    CandidateSlot,
    FollowUpRequest,
    IntervalKind,
    TimeInterval,
    WorkingHours,
)
from followup.core.session.models import NegotiationSession
from followup.core.session.store import SessionStore, get_session_store
from followup.infra.calendar import CalendarClient, get_calendar_client
from followup.infra.messaging import MessagingClient, get_messaging_client
from followup.infra.records import RecordStore, get_record_store

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class OutcomeStatus(str, Enum):
    """What an entry operation did."""

    NOOP = "noop"
    DUPLICATE = "duplicate"
    PROPOSED = "proposed"
    REPROMPTED = "reprompted"
    BOOKED = "booked"
    REGENERATED = "regenerated"
    ESCALATED = "escalated"
    IGNORED = "ignored"
    NO_SESSION = "no_session"
    CONFLICT = "conflict"


@dataclass
class CoordinatorOutcome:
    """Result of handling one inbound event."""

    status: OutcomeStatus
    session_key: Optional[str] = None
    phase: Optional[NegotiationPhase] = None
    message: Optional[str] = None
    booking: Optional[BookedAppointment] = None
    escalation_reason: Optional[EscalationReason] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        result = {"status": self.status.value}

        if self.session_key:
            result["session_key"] = self.session_key
        if self.phase:
            result["phase"] = self.phase.value
        if self.message:
            result["message"] = self.message
        if self.booking:
            result["booking"] = self.booking.to_dict()
        if self.escalation_reason:
            result["escalation_reason"] = self.escalation_reason.value

        return result


class BookingCoordinator:
    """
    Orchestrates negotiation sessions against the calendar and messaging
    capabilities.

    Coordinates:
    - Availability reconciliation
    - Session persistence (compare-and-swap)
    - The negotiation state machine
    - Calendar booking and patient messaging
    - Escalation
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        calendar: Optional[CalendarClient] = None,
        messenger: Optional[MessagingClient] = None,
        escalation: Optional[EscalationReporter] = None,
        records: Optional[RecordStore] = None,
        flow: Optional[NegotiationFlow] = None,
        composer: Optional[MessageComposer] = None,
        hints: Optional[ReplyHintProvider] = None,
        working_hours: Optional[WorkingHours] = None,
        tz: Optional[tzinfo] = None,
    ):
        """Initialize coordinator with optional dependencies.

        Anything not provided falls back to the shared instance.
        """
        self.store = store or get_session_store()
        self.calendar = calendar or get_calendar_client()
        self.messenger = messenger or get_messaging_client()
        self.escalation = escalation or get_escalation_reporter()
        self.records = records or get_record_store()
        self.flow = flow or get_negotiation_flow()
        self.composer = composer or MessageComposer()
        self.hints = hints or get_reply_hint_provider()
        self.working_hours = working_hours or settings.working_hours
        self.tz = tz or settings.tz

        self.slot_duration = settings.slot_duration
        self.max_candidates = settings.max_candidates
        self.candidates_per_day = settings.candidates_per_day
        self.session_ttl = settings.session_ttl
        self.channel_window = settings.channel_window
        self.booking_claim_timeout = settings.booking_claim_timeout

    # === Initiation ===

    async def on_initiation(
        self,
        request: FollowUpRequest,
        now: Optional[datetime] = None,
    ) -> CoordinatorOutcome:
        """Open a negotiation for a follow-up request.

        Idempotent: a redelivered request, or one arriving while another
        negotiation is live for the patient, is a logged duplicate. A
        redelivery of a request whose session never got past INITIATED
        (the first delivery failed before proposing) resumes it.
        """
        now = now or _utcnow()
        key = str(request.patient_identity)

        if not request.follow_up_required:
            logger.info(f"Request {request.request_id}: no follow-up required")
            return CoordinatorOutcome(status=OutcomeStatus.NOOP, session_key=key)

        window = derive_window(
            request.interval_spec,
            now,
            self.tz,
            settings.default_window_start_days,
            settings.default_window_end_days,
        )
        session = NegotiationSession.open(request, window, self.session_ttl, now)

        try:
            await self.store.create(session)
        except SessionAlreadyExists:
            stalled = await self._stalled_initiation(key, request.request_id)
            if stalled is None:
                logger.info(f"Duplicate initiation for {key} (request {request.request_id})")
                return CoordinatorOutcome(status=OutcomeStatus.DUPLICATE, session_key=key)
            logger.warning(f"Resuming initiation for {key} (request {request.request_id}) left unproposed")
            return await self._propose(stalled, request.patient_identity, now)

        logger.info(f"Session {key} opened, window {window.start.isoformat()} - {window.end.isoformat()}")

        if request.interval_spec.kind == IntervalKind.UNSPECIFIED:
            await self.escalation.flag(
                key,
                "unspecified_interval",
                {"reason_text": request.reason_text, "window": window.to_dict()},
                initiation_id=session.initiation_id,
            )

        return await self._propose(session, request.patient_identity, now)

    async def _stalled_initiation(self, key: str, request_id: str) -> Optional[NegotiationSession]:
        """The stored session for ``key`` if this request opened it and it never proposed."""
        try:
            current = await self.store.get(key)
        except SessionNotFound:
            return None
        if current.initiation_id != request_id or current.phase != NegotiationPhase.INITIATED:
            return None
        return current

    async def _propose(
        self,
        session: NegotiationSession,
        identity: PatientIdentity,
        now: datetime,
    ) -> CoordinatorOutcome:
        """Reconcile availability, persist the proposal, then send it."""
        key = session.session_key

        try:
            candidates = await self._find_candidates(session.window, now)
        except CapabilityFailure as e:
            return await self._fail(session, EscalationReason.CALENDAR_UNAVAILABLE, now, str(e))

        action = self.flow.open(session, candidates, now)
        try:
            await self._persist(session, NegotiationPhase.INITIATED)
        except SessionConflict:
            logger.warning(f"Session {key} changed before its proposal was sent")
            return CoordinatorOutcome(status=OutcomeStatus.CONFLICT, session_key=key)

        if action.action_type == ActionType.ESCALATE:
            return await self._report(session, action, now)

        text = self.composer.proposal(action.slots, session.reason_text)
        failed = await self._send_or_fail(session, identity, text, now)
        if failed:
            return failed

        return CoordinatorOutcome(
            status=OutcomeStatus.PROPOSED,
            session_key=key,
            phase=session.phase,
            message=text,
        )

    # === Replies ===

    async def on_reply(
        self,
        identity: Union[PatientIdentity, str],
        body: str,
        received_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> CoordinatorOutcome:
        """Advance a negotiation with an inbound patient message.

        If a concurrent reply wins the compare-and-swap, this reply is
        reprocessed once against the now-current session.
        """
        if not isinstance(identity, PatientIdentity):
            identity = normalize_identity(identity, settings.default_country_code)
        now = now or _utcnow()
        received_at = received_at or now

        try:
            return await self._process_reply(identity, body, received_at, now)
        except SessionConflict:
            logger.info(f"Reply for {identity} lost a race, reprocessing")

        try:
            return await self._process_reply(identity, body, received_at, now)
        except SessionConflict:
            logger.warning(f"Reply for {identity} lost a second race, dropping")
            return CoordinatorOutcome(status=OutcomeStatus.CONFLICT, session_key=str(identity))

    async def _process_reply(
        self,
        identity: PatientIdentity,
        body: str,
        received_at: datetime,
        now: datetime,
    ) -> CoordinatorOutcome:
        key = str(identity)

        try:
            session = await self.store.get(key)
        except SessionNotFound:
            logger.info(f"Reply from {key} with no session")
            text = self.composer.no_pending_appointment()
            await self._send_best_effort(identity, text)
            return CoordinatorOutcome(status=OutcomeStatus.NO_SESSION, session_key=key, message=text)

        if session.is_terminal:
            logger.info(f"Ignoring reply for {key}: session already {session.phase.value}")
            return self._ignored(session)

        if session.phase == NegotiationPhase.PROPOSED and now >= session.expires_at:
            logger.info(f"Ignoring late reply for {key}: proposal expired {session.expires_at.isoformat()}")
            await self._expire(session, now)
            return self._ignored(session)

        if session.claim_is_stale(self.booking_claim_timeout, now) and now < session.expires_at:
            return await self._resume_booking(session, identity, received_at, now)

        if session.phase != NegotiationPhase.PROPOSED:
            logger.info(f"Ignoring reply for {key} while {session.phase.value}")
            return self._ignored(session)

        session.last_inbound_at = received_at

        if now - received_at > self.channel_window:
            logger.warning(f"Reply for {key} received {received_at.isoformat()}, outside channel window")
            return await self._fail(session, EscalationReason.CHANNEL_WINDOW_CLOSED, now)

        expected = session.phase
        action = self.flow.handle_reply(session, body, now)

        if action.action_type == ActionType.IGNORE:
            return self._ignored(session)

        await self._persist(session, expected)

        if action.action_type == ActionType.ESCALATE:
            return await self._report(session, action, now)

        if action.action_type == ActionType.REPROMPT:
            hint = await self.hints.suggest(body, action.slots)
            text = self.composer.reprompt(action.slots, hint)
            failed = await self._send_or_fail(session, identity, text, now)
            if failed:
                return failed
            return CoordinatorOutcome(
                status=OutcomeStatus.REPROMPTED,
                session_key=key,
                phase=session.phase,
                message=text,
            )

        return await self._confirm_and_book(session, identity, now)

    # === Booking ===

    async def _resume_booking(
        self,
        session: NegotiationSession,
        identity: PatientIdentity,
        received_at: datetime,
        now: datetime,
    ) -> CoordinatorOutcome:
        """Finish a booking whose claimant stopped before reaching a terminal phase.

        The reclaim write bumps the revision, so at most one redelivered
        reply takes the claim over. The free-slot re-check is skipped: the
        earlier claimant may already have created the event, which would
        show as busy. Re-creating it with the unchanged idempotency key
        returns that event, and a slot taken by anyone else comes back as
        a calendar conflict.
        """
        logger.warning(
            f"Session {session.session_key}: booking claim idle since "
            f"{session.last_activity_at.isoformat()}, resuming option {session.selected_slot.ordinal}"
        )
        session.last_inbound_at = received_at
        session.reclaim(now)
        await self._persist(session, NegotiationPhase.AWAITING_CONFIRMATION)
        return await self._confirm_and_book(session, identity, now, recheck=False)

    async def _confirm_and_book(
        self,
        session: NegotiationSession,
        identity: PatientIdentity,
        now: datetime,
        recheck: bool = True,
    ) -> CoordinatorOutcome:
        """Re-check the claimed slot, then create the calendar event."""
        slot = session.selected_slot

        if recheck:
            try:
                busy = await call_with_retry(
                    lambda: self.calendar.list_busy_intervals(slot.interval),
                    "slot re-check",
                )
            except CapabilityFailure as e:
                return await self._fail(session, EscalationReason.CALENDAR_UNAVAILABLE, now, str(e))

            if not is_slot_free(slot.interval, busy):
                logger.info(f"Session {session.session_key}: option {slot.ordinal} taken since proposal")
                return await self._regenerate(session, identity, now)

        summary = self._summary(session)
        idempotency_key = f"{session.session_key}:{session.initiation_id}:{slot.ordinal}"

        try:
            event_id = await call_with_retry(
                lambda: self.calendar.create_event(slot.interval, summary, idempotency_key),
                "create event",
            )
        except RaceLost as e:
            logger.info(f"Session {session.session_key}: {e}")
            return await self._regenerate(session, identity, now)
        except CapabilityFailure as e:
            return await self._fail(session, EscalationReason.CALENDAR_UNAVAILABLE, now, str(e))

        action = self.flow.handle_booked(session, event_id, now)
        appointment = BookedAppointment(
            session_key=session.session_key,
            slot=slot.interval,
            calendar_event_id=event_id,
            summary_text=summary,
            created_at=now,
        )

        try:
            await self._persist(session, NegotiationPhase.AWAITING_CONFIRMATION)
        except (SessionConflict, SessionNotFound):
            logger.error(
                f"Session {session.session_key} closed while event {event_id} was being created"
            )
            await self.escalation.flag(
                session.session_key,
                "booked_after_close",
                appointment.to_dict(),
                initiation_id=session.initiation_id,
            )
            return CoordinatorOutcome(status=OutcomeStatus.CONFLICT, session_key=session.session_key)

        await self._record_appointment(appointment, session.initiation_id)

        text = self.composer.booking_confirmed(action.selected)
        await self._send_best_effort(identity, text)

        return CoordinatorOutcome(
            status=OutcomeStatus.BOOKED,
            session_key=session.session_key,
            phase=session.phase,
            message=text,
            booking=appointment,
        )

    async def _regenerate(
        self,
        session: NegotiationSession,
        identity: PatientIdentity,
        now: datetime,
    ) -> CoordinatorOutcome:
        """Selected slot was lost: propose a fresh, disjoint batch."""
        expected = session.phase
        previous = [slot.interval for slot in session.proposed_slots]

        try:
            candidates = await self._find_candidates(session.window, now, exclude=previous)
        except CapabilityFailure as e:
            return await self._fail(session, EscalationReason.CALENDAR_UNAVAILABLE, now, str(e))

        action = self.flow.handle_race_lost(session, candidates, now)
        await self._persist(session, expected)

        if action.action_type == ActionType.ESCALATE:
            return await self._report(session, action, now)

        text = self.composer.slot_taken(action.slots)
        failed = await self._send_or_fail(session, identity, text, now)
        if failed:
            return failed

        return CoordinatorOutcome(
            status=OutcomeStatus.REGENERATED,
            session_key=session.session_key,
            phase=session.phase,
            message=text,
        )

    async def _record_appointment(self, appointment: BookedAppointment, initiation_id: str) -> None:
        try:
            await call_with_retry(
                lambda: self.records.save_appointment(appointment, initiation_id),
                "appointment record",
            )
        except CapabilityFailure as e:
            logger.critical(
                f"Appointment record lost for {appointment.session_key}: {e} | "
                + json.dumps({"initiation_id": initiation_id, **appointment.to_dict()})
            )

    # === Helpers ===

    async def _find_candidates(
        self,
        window: Optional[TimeInterval],
        now: datetime,
        exclude: Sequence[TimeInterval] = (),
    ) -> list[CandidateSlot]:
        """Candidates in what is left of the window (never in the past)."""
        if window is None or window.end <= now:
            return []
        if window.start < now:
            window = TimeInterval(start=now, end=window.end)

        busy = await call_with_retry(
            lambda: self.calendar.list_busy_intervals(window),
            "busy lookup",
        )
        return find_candidate_slots(
            busy,
            window,
            self.working_hours,
            self.slot_duration,
            self.max_candidates,
            tz=self.tz,
            per_day_limit=self.candidates_per_day,
            exclude=exclude,
        )

    async def _persist(self, session: NegotiationSession, expected: NegotiationPhase) -> None:
        """Compare-and-swap write; raises SessionConflict if the read is stale."""
        await self.store.update(session, expected)
        logger.info(
            f"Session {session.session_key}: {expected.value} -> {session.phase.value} "
            f"(rev {session.revision})"
        )

    async def _fail(
        self,
        session: NegotiationSession,
        reason: EscalationReason,
        now: datetime,
        detail: str = "",
    ) -> CoordinatorOutcome:
        """Escalate after a precondition or capability failure."""
        expected = session.phase
        action = self.flow.handle_failure(session, reason, now)
        try:
            await self._persist(session, expected)
        except SessionConflict:
            logger.warning(f"Session {session.session_key} changed before escalation could be saved")
            return CoordinatorOutcome(status=OutcomeStatus.CONFLICT, session_key=session.session_key)
        return await self._report(session, action, now, {"error": detail} if detail else None)

    async def _report(
        self,
        session: NegotiationSession,
        action: FlowAction,
        now: datetime,
        context: Optional[dict] = None,
    ) -> CoordinatorOutcome:
        await self.escalation.report(session, action.escalation_reason, context, now=now)
        return CoordinatorOutcome(
            status=OutcomeStatus.ESCALATED,
            session_key=session.session_key,
            phase=session.phase,
            escalation_reason=action.escalation_reason,
        )

    async def _expire(self, session: NegotiationSession, now: datetime) -> None:
        expected = session.phase
        self.flow.expire(session, now)
        try:
            await self._persist(session, expected)
        except SessionConflict:
            logger.info(f"Session {session.session_key} already changed, leaving expiry to the reaper")
            return
        await self.escalation.report(
            session,
            EscalationReason.SESSION_EXPIRED,
            {"expired_from": expected.value},
            now=now,
        )

    async def _send_or_fail(
        self,
        session: NegotiationSession,
        identity: PatientIdentity,
        text: str,
        now: datetime,
    ) -> Optional[CoordinatorOutcome]:
        """Send a message; escalate the session if it cannot be delivered."""
        try:
            await call_with_retry(
                lambda: self.messenger.send_message(identity, text),
                "send message",
            )
            return None
        except ChannelWindowClosed as e:
            return await self._fail(session, EscalationReason.CHANNEL_WINDOW_CLOSED, now, str(e))
        except CapabilityFailure as e:
            return await self._fail(session, EscalationReason.PATIENT_UNREACHABLE, now, str(e))

    async def _send_best_effort(self, identity: PatientIdentity, text: str) -> None:
        try:
            await call_with_retry(
                lambda: self.messenger.send_message(identity, text),
                "send message",
            )
        except CapabilityFailure as e:
            logger.warning(f"Message to {identity} not delivered: {e}")

    def _summary(self, session: NegotiationSession) -> str:
        if session.reason_text:
            return f"Follow-up: {session.reason_text}"
        return "Follow-up appointment"

    def _ignored(self, session: NegotiationSession) -> CoordinatorOutcome:
        return CoordinatorOutcome(
            status=OutcomeStatus.IGNORED,
            session_key=session.session_key,
            phase=session.phase,
        )


# Singleton
_coordinator: Optional[BookingCoordinator] = None


def get_booking_coordinator() -> BookingCoordinator:
    """Get singleton BookingCoordinator."""
    global _coordinator
    if _coordinator is None:
        _coordinator = BookingCoordinator()
    return _coordinator
