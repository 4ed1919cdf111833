"""Shared fixtures."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from followup.config import settings
from followup.core.identity import PatientIdentity
from tests.fakes import CLINIC_TZ, WEEKDAY_HOURS, FakeCalendar, FakeMessenger, FakeSessionStore


@pytest.fixture(autouse=True)
def no_retry_backoff(monkeypatch):
    """Retries run back to back in tests."""
    monkeypatch.setattr(settings, "capability_backoff_seconds", 0.0)


@pytest.fixture
def store():
    return FakeSessionStore()


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def escalation():
    reporter = AsyncMock()
    reporter.report = AsyncMock(return_value=True)
    reporter.flag = AsyncMock(return_value=None)
    return reporter


@pytest.fixture
def records():
    record_store = AsyncMock()
    record_store.save_appointment = AsyncMock(side_effect=lambda appointment, initiation_id: appointment)
    return record_store


@pytest.fixture
def patient() -> PatientIdentity:
    return PatientIdentity("+15550102000")


@pytest.fixture
def clinic_tz():
    return CLINIC_TZ


@pytest.fixture
def working_hours():
    return WEEKDAY_HOURS


@pytest.fixture
def thirty_minutes():
    return timedelta(minutes=30)
