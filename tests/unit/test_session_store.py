"""Tests for the Redis session store."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from followup.core.errors import (
    SessionAlreadyExists,
    SessionConflict,
    SessionNotFound,
    SessionStoreUnavailable,
)
from followup.core.identity import PatientIdentity
from followup.core.scheduling.state import EscalationReason, NegotiationPhase
from followup.core.scheduling.types import FollowUpRequest, IntervalSpec
from followup.core.session.models import NegotiationSession
from followup.core.session.store import (
    CREATE_SCRIPT,
    LIVE_INDEX_KEY,
    UPDATE_SCRIPT,
    SessionStore,
)
from tests.fakes import utc

NOW = utc(2025, 1, 6, 15)


def make_session(request_id="req-1") -> NegotiationSession:
    request = FollowUpRequest(
        patient_identity=PatientIdentity("+15550102000"),
        follow_up_required=True,
        interval_spec=IntervalSpec.unbounded(),
        created_at=NOW,
        request_id=request_id,
    )
    return NegotiationSession.open(request, None, timedelta(hours=72), NOW)


class TestSessionStore:
    """Test Redis session persistence."""

    @pytest.fixture
    def mock_redis(self):
        """Create mock Redis client."""
        mock = AsyncMock()
        mock.get = AsyncMock(return_value=None)
        mock.eval = AsyncMock(return_value=1)
        mock.delete = AsyncMock(return_value=1)
        mock.zrem = AsyncMock(return_value=1)
        mock.zrangebyscore = AsyncMock(return_value=[])
        return mock

    @pytest.fixture
    def store(self, mock_redis):
        """Create store bound to the mock client."""
        return SessionStore(redis_client=mock_redis, audit_retention=timedelta(days=30))

    @pytest.mark.asyncio
    async def test_create(self, store, mock_redis):
        """Test create runs the create script with terminal phases."""
        session = make_session()

        await store.create(session)

        args = mock_redis.eval.call_args.args
        assert args[0] == CREATE_SCRIPT
        assert args[1] == 2
        assert args[2] == "followup:v1:session:+15550102000"
        assert args[3] == LIVE_INDEX_KEY
        assert args[6] == "+15550102000"
        assert args[7] == "req-1"
        assert set(args[8:]) == {"booked", "expired", "escalated"}

    @pytest.mark.asyncio
    async def test_create_rejected(self, store, mock_redis):
        """Test a refused create raises SessionAlreadyExists."""
        mock_redis.eval = AsyncMock(return_value=0)

        with pytest.raises(SessionAlreadyExists):
            await store.create(make_session())

    @pytest.mark.asyncio
    async def test_get_existing(self, store, mock_redis):
        """Test reading a stored session."""
        existing = make_session()
        mock_redis.get = AsyncMock(return_value=existing.to_json())

        session = await store.get("+15550102000")

        assert session.initiation_id == "req-1"
        assert session.phase == NegotiationPhase.INITIATED

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        """Test a missing key raises SessionNotFound."""
        with pytest.raises(SessionNotFound):
            await store.get("+15550109999")

    @pytest.mark.asyncio
    async def test_update_bumps_revision(self, store, mock_redis):
        """Test a successful CAS write bumps the revision."""
        session = make_session()
        session.revision = 3

        await store.update(session, NegotiationPhase.INITIATED)

        args = mock_redis.eval.call_args.args
        assert args[0] == UPDATE_SCRIPT
        assert args[5] == "initiated"
        assert args[6] == 3
        assert args[7] == "0"
        assert session.revision == 4

    @pytest.mark.asyncio
    async def test_terminal_update_sets_retention(self, store, mock_redis):
        """Test a terminal write carries the audit retention."""
        session = make_session()
        session.escalate(EscalationReason.NO_AVAILABILITY, NOW)

        await store.update(session, NegotiationPhase.INITIATED)

        args = mock_redis.eval.call_args.args
        assert args[7] == "1"
        assert args[8] == 30 * 24 * 3600

    @pytest.mark.asyncio
    async def test_update_conflict_keeps_revision(self, store, mock_redis):
        """Test a failed CAS raises SessionConflict and leaves the copy alone."""
        mock_redis.eval = AsyncMock(return_value=0)
        session = make_session()
        session.revision = 2

        with pytest.raises(SessionConflict):
            await store.update(session, NegotiationPhase.INITIATED)

        assert session.revision == 2

    @pytest.mark.asyncio
    async def test_update_missing(self, store, mock_redis):
        """Test updating a vanished session raises SessionNotFound."""
        mock_redis.eval = AsyncMock(return_value=-1)

        with pytest.raises(SessionNotFound):
            await store.update(make_session(), NegotiationPhase.INITIATED)

    @pytest.mark.asyncio
    async def test_redis_error_is_unavailable(self, store, mock_redis):
        """Test Redis errors surface as SessionStoreUnavailable."""
        mock_redis.eval = AsyncMock(side_effect=RedisConnectionError("down"))
        session = make_session()

        with pytest.raises(SessionStoreUnavailable):
            await store.update(session, NegotiationPhase.INITIATED)

        assert session.revision == 0

    @pytest.mark.asyncio
    async def test_no_redis(self):
        """Test an unreachable Redis raises instead of falling back to memory."""
        store = SessionStore()

        with patch("followup.core.session.store.get_redis", return_value=None):
            with pytest.raises(SessionStoreUnavailable):
                await store.get("+15550102000")

    @pytest.mark.asyncio
    async def test_list_expired(self, store, mock_redis):
        """Test expired keys come from the live index by score."""
        mock_redis.zrangebyscore = AsyncMock(return_value=["+15550102000"])

        keys = await store.list_expired(NOW, limit=10)

        assert keys == ["+15550102000"]
        mock_redis.zrangebyscore.assert_called_once_with(
            LIVE_INDEX_KEY, "-inf", NOW.timestamp(), start=0, num=10
        )

    @pytest.mark.asyncio
    async def test_delete(self, store, mock_redis):
        """Test delete removes the record and its index entry."""
        assert await store.delete("+15550102000") is True
        mock_redis.zrem.assert_called_once_with(LIVE_INDEX_KEY, "+15550102000")
