"""In-memory stand-ins for the session store and the calendar and messaging
capabilities."""

import asyncio
from datetime import datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from followup.core.errors import SessionAlreadyExists, SessionConflict, SessionNotFound
from followup.core.identity import PatientIdentity
from followup.core.scheduling.types import TimeInterval, WorkingHours
from followup.core.session.models import NegotiationSession

CLINIC_TZ = ZoneInfo("America/New_York")
WEEKDAY_HOURS = WorkingHours(
    start_of_day=time(9, 0),
    end_of_day=time(17, 0),
    weekdays=frozenset({1, 2, 3, 4, 5}),
)


def local(*args) -> datetime:
    """Aware datetime in the clinic timezone."""
    return datetime(*args, tzinfo=CLINIC_TZ)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class FakeSessionStore:
    """In-memory SessionStore with the same create / compare-and-swap rules.

    Records are stored as JSON so callers never share objects with the
    store. ``get`` yields to the event loop after reading, which lets two
    concurrent tasks read the same revision.
    """

    def __init__(self):
        self.records: dict[str, str] = {}
        self.conflicts = 0

    async def create(self, session: NegotiationSession) -> NegotiationSession:
        raw = self.records.get(session.session_key)
        if raw is not None:
            current = NegotiationSession.from_json(raw)
            if current.initiation_id == session.initiation_id or not current.is_terminal:
                raise SessionAlreadyExists(session.session_key)
        self.records[session.session_key] = session.to_json()
        return session

    async def get(self, session_key: str) -> NegotiationSession:
        raw = self.records.get(session_key)
        await asyncio.sleep(0)
        if raw is None:
            raise SessionNotFound(session_key)
        return NegotiationSession.from_json(raw)

    async def update(self, session: NegotiationSession, expected_phase) -> NegotiationSession:
        raw = self.records.get(session.session_key)
        if raw is None:
            raise SessionNotFound(session.session_key)
        current = NegotiationSession.from_json(raw)
        if current.phase != expected_phase or current.revision != session.revision:
            self.conflicts += 1
            raise SessionConflict(session.session_key, expected_phase.value)
        session.revision += 1
        self.records[session.session_key] = session.to_json()
        return session

    async def delete(self, session_key: str) -> bool:
        return self.records.pop(session_key, None) is not None

    async def list_expired(self, now: Optional[datetime] = None, limit: int = 100) -> list[str]:
        now = now or datetime.now(timezone.utc)
        keys = []
        for key, raw in self.records.items():
            session = NegotiationSession.from_json(raw)
            if not session.is_terminal and session.expires_at <= now:
                keys.append(key)
        return keys[:limit]

    async def forget_live(self, session_key: str) -> None:
        pass

    def peek(self, session_key: str) -> NegotiationSession:
        return NegotiationSession.from_json(self.records[session_key])


class FakeCalendar:
    """Calendar capability backed by a list of busy intervals.

    A repeated idempotency key returns the event created for it.
    """

    def __init__(self, busy: Optional[list[TimeInterval]] = None):
        self.busy = list(busy or [])
        self.created: list[tuple[TimeInterval, str, Optional[str]]] = []
        self.events_by_key: dict[str, str] = {}
        self.list_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.list_calls = 0

    async def list_busy_intervals(self, window: TimeInterval) -> list[TimeInterval]:
        self.list_calls += 1
        if self.list_error:
            raise self.list_error
        return [busy for busy in self.busy if busy.overlaps(window)]

    async def create_event(
        self,
        interval: TimeInterval,
        summary_text: str,
        idempotency_key: Optional[str] = None,
    ) -> str:
        if self.create_error:
            raise self.create_error
        if idempotency_key in self.events_by_key:
            return self.events_by_key[idempotency_key]
        self.created.append((interval, summary_text, idempotency_key))
        self.busy.append(interval)
        event_id = f"evt-{len(self.created)}"
        if idempotency_key:
            self.events_by_key[idempotency_key] = event_id
        return event_id


class FakeMessenger:
    """Messaging capability that records what was sent."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.error: Optional[Exception] = None

    async def send_message(self, identity: PatientIdentity, text: str) -> str:
        if self.error:
            raise self.error
        self.sent.append((str(identity), text))
        return f"msg-{len(self.sent)}"

    @property
    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


