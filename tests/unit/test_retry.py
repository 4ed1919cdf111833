"""Tests for bounded capability retries."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from followup.core.errors import (
    CalendarUnavailable,
    CapabilityFailure,
    ChannelWindowClosed,
    RaceLost,
)
from followup.core.retry import call_with_retry


class TestCallWithRetry:
    """Test call_with_retry."""

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self):
        """Test a healthy call runs once."""
        operation = AsyncMock(return_value="ok")

        assert await call_with_retry(operation, "busy lookup", max_attempts=3) == "ok"
        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        """Test a transient failure is retried."""
        operation = AsyncMock(side_effect=[CalendarUnavailable("503"), "ok"])

        assert await call_with_retry(operation, "busy lookup", max_attempts=3) == "ok"
        assert operation.call_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_failure(self):
        """Test the last failure propagates once attempts run out."""
        operation = AsyncMock(side_effect=CalendarUnavailable("503"))

        with pytest.raises(CalendarUnavailable):
            await call_with_retry(operation, "busy lookup", max_attempts=3)

        assert operation.call_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        """Test a non-retryable failure is not retried."""
        operation = AsyncMock(side_effect=ChannelWindowClosed("closed"))

        with pytest.raises(ChannelWindowClosed):
            await call_with_retry(operation, "send", max_attempts=3)

        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        """Test errors outside the capability taxonomy are not retried."""
        operation = AsyncMock(side_effect=RaceLost("taken"))

        with pytest.raises(RaceLost):
            await call_with_retry(operation, "create event", max_attempts=3)

        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_timeout_becomes_capability_failure(self):
        """Test an attempt that exceeds the timeout counts as a failure."""

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(CapabilityFailure) as exc:
            await call_with_retry(slow, "busy lookup", max_attempts=2, timeout=0.01)

        assert "timed out" in str(exc.value)
