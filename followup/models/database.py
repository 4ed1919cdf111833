"""
Database Models

SQLAlchemy ORM models for the durable records the coordinator keeps
outside the session store: escalations for human follow-up and booked
appointments.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, DateTime, Index, String, Text, UniqueConstraint,
    Enum as SQLEnum, text
)
from sqlalchemy.dialects.postgresql import UUID, JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds a created_at timestamp column."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class RecordKind(str, Enum):
    """Escalation record kind."""
    ESCALATION = "escalation"
    FLAG = "flag"


class EscalationRecordRow(Base, TimestampMixin):
    """
    Escalation record.

    One row per handoff to a human (kind=escalation) or per review flag
    that does not end the negotiation (kind=flag).
    """

    __tablename__ = "escalations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    session_key: Mapped[str] = mapped_column(String(64), nullable=False)
    initiation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    kind: Mapped[RecordKind] = mapped_column(
        SQLEnum(RecordKind),
        default=RecordKind.ESCALATION,
        nullable=False
    )
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    context: Mapped[dict] = mapped_column(JSON, default=dict)
    patient_notified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("idx_escalations_session", "session_key"),
        Index("idx_escalations_reason", "reason"),
    )

    def __repr__(self) -> str:
        return f"<EscalationRecordRow(session_key={self.session_key}, reason={self.reason})>"


class BookedAppointmentRow(Base, TimestampMixin):
    """
    Booked appointment.

    Written once per negotiation, after the calendar event exists.
    """

    __tablename__ = "booked_appointments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    session_key: Mapped[str] = mapped_column(String(64), nullable=False)
    initiation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    calendar_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    slot_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    slot_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    summary_text: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("session_key", "initiation_id", name="uq_booked_session_initiation"),
        Index("idx_booked_event", "calendar_event_id"),
    )

    def __repr__(self) -> str:
        return f"<BookedAppointmentRow(session_key={self.session_key}, event={self.calendar_event_id})>"
