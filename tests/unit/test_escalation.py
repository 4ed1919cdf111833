"""Tests for the Escalation Reporter."""

import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from followup.core.errors import MessagingFailure
from followup.core.identity import PatientIdentity
from followup.core.scheduling.escalation import EscalationReporter
from followup.core.scheduling.messages import MessageComposer
from followup.core.scheduling.state import EscalationReason
from followup.core.scheduling.types import FollowUpRequest, IntervalSpec
from followup.core.session.models import NegotiationSession
from followup.infra.records import RecordStoreError
from followup.models.database import RecordKind
from tests.fakes import CLINIC_TZ, FakeMessenger, utc

NOW = utc(2025, 1, 6, 15)


@pytest.fixture
def session():
    request = FollowUpRequest(
        patient_identity=PatientIdentity("+15550102000"),
        follow_up_required=True,
        interval_spec=IntervalSpec.unbounded(),
        reason_text="knee review",
        created_at=NOW,
        request_id="req-7",
    )
    opened = NegotiationSession.open(request, None, timedelta(hours=72), NOW)
    opened.escalate(EscalationReason.NO_AVAILABILITY, NOW)
    return opened


@pytest.fixture
def records():
    record_store = AsyncMock()
    record_store.save_escalation = AsyncMock(return_value="rec-1")
    record_store.mark_notified = AsyncMock()
    return record_store


@pytest.fixture
def reporter(records, messenger):
    return EscalationReporter(
        records=records,
        messenger=messenger,
        composer=MessageComposer(tz=CLINIC_TZ, clinic_name="Test Clinic"),
        channel_window=timedelta(hours=24),
    )


class TestReport:
    """Test escalation reporting."""

    @pytest.mark.asyncio
    async def test_records_and_notifies(self, reporter, records, messenger, session):
        """Test a reachable patient gets the handoff notice."""
        notified = await reporter.report(
            session, EscalationReason.NO_AVAILABILITY, {"detail": "no slots"}, NOW
        )

        assert notified is True
        kwargs = records.save_escalation.call_args.kwargs
        assert kwargs["session_key"] == "+15550102000"
        assert kwargs["reason"] == "no_availability"
        assert kwargs["initiation_id"] == "req-7"
        assert kwargs["context"]["detail"] == "no slots"
        assert kwargs["context"]["reason_text"] == "knee review"
        assert messenger.sent[0][0] == "+15550102000"
        assert "member of our team" in messenger.texts[0]
        records.mark_notified.assert_called_once_with("rec-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reason",
        [EscalationReason.CHANNEL_WINDOW_CLOSED, EscalationReason.PATIENT_UNREACHABLE],
    )
    async def test_unreachable_reason_not_notified(self, reporter, records, messenger, session, reason):
        """Test no notice is attempted when the channel is known closed."""
        notified = await reporter.report(session, reason, now=NOW)

        assert notified is False
        assert messenger.sent == []
        records.save_escalation.assert_called_once()
        records.mark_notified.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_inbound_not_notified(self, reporter, messenger, session):
        """Test the notice is skipped once the last inbound is outside the window."""
        session.last_inbound_at = NOW - timedelta(hours=25)

        notified = await reporter.report(session, EscalationReason.RETRIES_EXHAUSTED, now=NOW)

        assert notified is False
        assert messenger.sent == []

    @pytest.mark.asyncio
    async def test_record_failure_logged_critical(self, reporter, records, messenger, session, caplog):
        """Test a lost record is logged at CRITICAL with its payload."""
        records.save_escalation = AsyncMock(side_effect=RecordStoreError("db down"))

        with caplog.at_level(logging.CRITICAL, logger="followup.core.scheduling.escalation"):
            notified = await reporter.report(session, EscalationReason.NO_AVAILABILITY, now=NOW)

        assert notified is True
        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert "req-7" in critical[0].getMessage()
        assert records.save_escalation.call_count == 3
        records.mark_notified.assert_not_called()

    @pytest.mark.asyncio
    async def test_notice_failure_does_not_raise(self, reporter, records, messenger, session):
        """Test a failed notice is reported as not notified."""
        messenger.error = MessagingFailure("provider down")

        notified = await reporter.report(session, EscalationReason.NO_AVAILABILITY, now=NOW)

        assert notified is False
        records.save_escalation.assert_called_once()
        records.mark_notified.assert_not_called()


class TestChannelReachable:
    """Test the reachability rule."""

    def test_no_inbound_yet(self, reporter, session):
        assert reporter.channel_reachable(session, EscalationReason.NO_AVAILABILITY, NOW)

    def test_recent_inbound(self, reporter, session):
        session.last_inbound_at = NOW - timedelta(hours=23)

        assert reporter.channel_reachable(session, EscalationReason.RETRIES_EXHAUSTED, NOW)


class TestFlag:
    """Test review flags."""

    @pytest.mark.asyncio
    async def test_flag_saved_as_flag(self, reporter, records, messenger):
        """Test flags are stored with kind FLAG and send nothing."""
        await reporter.flag("+15550102000", "unspecified_interval", {"note": "x"}, "req-9")

        kwargs = records.save_escalation.call_args.kwargs
        assert kwargs["kind"] == RecordKind.FLAG
        assert kwargs["reason"] == "unspecified_interval"
        assert messenger.sent == []

    @pytest.mark.asyncio
    async def test_flag_failure_swallowed(self, reporter, records):
        """Test a flag that cannot be written does not raise."""
        records.save_escalation = AsyncMock(side_effect=RecordStoreError("db down"))

        await reporter.flag("+15550102000", "booked_after_close")

        assert records.save_escalation.call_count == 3
