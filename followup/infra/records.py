"""
Durable record store.

Writes escalation records and booked appointments to PostgreSQL. These
outlive the session store's audit window and are what staff work from.
"""

import logging
import uuid
from contextlib import AbstractAsyncContextManager
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from followup.core.errors import CapabilityFailure
from followup.core.scheduling.types import BookedAppointment, TimeInterval
from followup.models.database import BookedAppointmentRow, EscalationRecordRow, RecordKind

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class RecordStoreError(CapabilityFailure):
    """Database rejected or could not serve a record operation."""

    def __init__(self, message: str = ""):
        super().__init__("records", message)


def _row_to_appointment(row: BookedAppointmentRow) -> BookedAppointment:
    return BookedAppointment(
        session_key=row.session_key,
        slot=TimeInterval(start=row.slot_start, end=row.slot_end),
        calendar_event_id=row.calendar_event_id,
        summary_text=row.summary_text,
        created_at=row.created_at,
    )


class RecordStore:
    """PostgreSQL-backed escalation and appointment records."""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        """Initialize store.

        Args:
            session_factory: Async context manager factory yielding a
                committed-on-exit AsyncSession (defaults to get_db_context)
        """
        if session_factory is None:
            from followup.infra.database import get_db_context

            session_factory = get_db_context
        self._session_factory = session_factory

    async def save_escalation(
        self,
        session_key: str,
        reason: str,
        context: Optional[dict] = None,
        initiation_id: Optional[str] = None,
        kind: RecordKind = RecordKind.ESCALATION,
    ) -> str:
        """
        Persist an escalation or review flag.

        Returns:
            Record ID

        Raises:
            RecordStoreError: If the database write fails
        """
        row = EscalationRecordRow(
            id=uuid.uuid4(),
            session_key=session_key,
            initiation_id=initiation_id,
            kind=kind,
            reason=reason,
            context=context or {},
            patient_notified=False,
        )
        try:
            async with self._session_factory() as db:
                db.add(row)
        except SQLAlchemyError as e:
            raise RecordStoreError(str(e)) from e

        logger.info(f"{kind.value.capitalize()} recorded for {session_key}: {reason}")
        return str(row.id)

    async def mark_notified(self, record_id: str) -> None:
        """Record that the patient received the handoff notice."""
        try:
            async with self._session_factory() as db:
                await db.execute(
                    update(EscalationRecordRow)
                    .where(EscalationRecordRow.id == uuid.UUID(record_id))
                    .values(patient_notified=True)
                )
        except SQLAlchemyError as e:
            raise RecordStoreError(str(e)) from e

    async def save_appointment(
        self,
        appointment: BookedAppointment,
        initiation_id: str,
    ) -> BookedAppointment:
        """
        Persist a booked appointment, once per (session_key, initiation_id).

        A second write for the same pair returns the stored record.

        Raises:
            RecordStoreError: If the database write fails
        """
        row = BookedAppointmentRow(
            id=uuid.uuid4(),
            session_key=appointment.session_key,
            initiation_id=initiation_id,
            calendar_event_id=appointment.calendar_event_id,
            slot_start=appointment.slot.start,
            slot_end=appointment.slot.end,
            summary_text=appointment.summary_text,
            created_at=appointment.created_at,
        )
        try:
            async with self._session_factory() as db:
                db.add(row)
        except IntegrityError:
            logger.info(
                f"Appointment for {appointment.session_key}/{initiation_id} already recorded"
            )
            existing = await self.get_appointment(appointment.session_key, initiation_id)
            return existing or appointment
        except SQLAlchemyError as e:
            raise RecordStoreError(str(e)) from e

        logger.info(
            f"Appointment recorded for {appointment.session_key}: {appointment.calendar_event_id}"
        )
        return appointment

    async def get_appointment(
        self,
        session_key: str,
        initiation_id: str,
    ) -> Optional[BookedAppointment]:
        """Get the booked appointment for a negotiation, if any."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(BookedAppointmentRow).where(
                        BookedAppointmentRow.session_key == session_key,
                        BookedAppointmentRow.initiation_id == initiation_id,
                    )
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RecordStoreError(str(e)) from e

        return _row_to_appointment(row) if row else None


# Singleton
_store: Optional[RecordStore] = None


def get_record_store() -> RecordStore:
    """Get singleton RecordStore."""
    global _store
    if _store is None:
        _store = RecordStore()
    return _store
