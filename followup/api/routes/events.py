"""
Event Endpoints.

Webhook receivers for the two inbound feeds:
- POST /events/follow-up - structured follow-up request from the note classifier
- POST /events/reply - inbound patient message from the messaging provider

Both feeds deliver at-least-once. Store or capability outages surface as
503 so the sender redelivers; duplicates are absorbed by the coordinator.
"""

import logging
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field, field_validator

from followup.config import settings
from followup.core.identity import require_identity
from followup.core.scheduling.coordinator import BookingCoordinator, get_booking_coordinator
from followup.core.scheduling.types import FollowUpRequest, IntervalSpec, derive_request_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Events"])


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps from providers are taken as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class IntervalSpecModel(BaseModel):
    """Follow-up interval as produced by the note classifier."""

    kind: Literal["relative", "unbounded", "unspecified"]
    amount: Optional[int] = Field(default=None, ge=1)
    unit: Optional[Literal["days", "weeks", "months"]] = None


class FollowUpEvent(BaseModel):
    """Follow-up request."""

    patient_identity: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Patient phone handle, any channel format",
        examples=["whatsapp:+15550102000"],
    )
    follow_up_required: bool = Field(
        ...,
        description="Whether the note calls for a follow-up visit",
    )
    interval: IntervalSpecModel = Field(
        default_factory=lambda: IntervalSpecModel(kind="unspecified"),
        description="When the follow-up should happen",
    )
    reason_text: str = Field(
        default="",
        max_length=500,
        description="Short reason, used in the calendar event summary",
        examples=["blood pressure recheck"],
    )
    created_at: Optional[datetime] = None
    request_id: Optional[str] = Field(
        default=None,
        max_length=64,
        description="Upstream initiation ID; derived from the event content when absent",
    )

    @field_validator("created_at")
    @classmethod
    def created_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class ReplyEvent(BaseModel):
    """Inbound patient message."""

    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(
        ...,
        alias="from",
        min_length=1,
        max_length=64,
        description="Sender handle as delivered by the channel",
        examples=["whatsapp:+15550102000"],
    )
    body: str = Field(
        ...,
        max_length=2000,
        description="Message text",
        examples=["2"],
    )
    received_at: Optional[datetime] = Field(
        default=None,
        description="When the provider received the message (defaults to now)",
    )

    @field_validator("received_at")
    @classmethod
    def received_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class OutcomeResponse(BaseModel):
    """Coordinator outcome."""

    status: str
    session_key: Optional[str] = None
    phase: Optional[str] = None
    message: Optional[str] = None
    booking: Optional[dict] = None
    escalation_reason: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


ERROR_RESPONSES = {
    422: {"model": ErrorResponse, "description": "Invalid event"},
    503: {"model": ErrorResponse, "description": "Store or provider unavailable; redeliver"},
}


@router.post(
    "/follow-up",
    response_model=OutcomeResponse,
    status_code=status.HTTP_200_OK,
    summary="Start a follow-up negotiation",
    responses=ERROR_RESPONSES,
)
async def follow_up(
    event: FollowUpEvent,
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
) -> OutcomeResponse:
    """
    Open a negotiation and send the slot proposal.

    Returns `duplicate` for a redelivered request or when a negotiation is
    already live for the patient, and `noop` when no follow-up is required.
    A request without `request_id` is identified by its content, so an
    identical redelivery is still recognized.
    """
    identity = require_identity(event.patient_identity, settings.default_country_code)
    spec = IntervalSpec.from_dict(event.interval.model_dump())

    request_id = event.request_id or derive_request_id(
        identity, spec, event.reason_text, event.created_at
    )

    request_fields = {}
    if event.created_at:
        request_fields["created_at"] = event.created_at

    request = FollowUpRequest(
        patient_identity=identity,
        follow_up_required=event.follow_up_required,
        interval_spec=spec,
        reason_text=event.reason_text,
        request_id=request_id,
        **request_fields,
    )

    outcome = await coordinator.on_initiation(request)
    return OutcomeResponse(**outcome.to_dict())


@router.post(
    "/reply",
    response_model=OutcomeResponse,
    status_code=status.HTTP_200_OK,
    summary="Handle a patient reply",
    responses=ERROR_RESPONSES,
)
async def reply(
    event: ReplyEvent,
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
) -> OutcomeResponse:
    """Advance the patient's negotiation with their message."""
    identity = require_identity(event.sender, settings.default_country_code)

    outcome = await coordinator.on_reply(identity, event.body, event.received_at)
    return OutcomeResponse(**outcome.to_dict())
