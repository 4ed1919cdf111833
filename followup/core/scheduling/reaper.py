"""
Session reaper.

Background task that closes live sessions whose ``expires_at`` has passed
and hands them to the escalation reporter.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from followup.config import settings
from followup.core.errors import SessionConflict, SessionNotFound, SessionStoreUnavailable
from followup.core.scheduling.escalation import EscalationReporter, get_escalation_reporter
from followup.core.scheduling.flow import NegotiationFlow, get_negotiation_flow
from followup.core.scheduling.state import EscalationReason
from followup.core.session.store import SessionStore, get_session_store

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class SessionReaper:
    """Expires stale negotiations."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        flow: Optional[NegotiationFlow] = None,
        escalation: Optional[EscalationReporter] = None,
        interval_seconds: Optional[float] = None,
        batch_size: int = 100,
    ):
        self.store = store or get_session_store()
        self.flow = flow or get_negotiation_flow()
        self.escalation = escalation or get_escalation_reporter()
        self.interval_seconds = interval_seconds or settings.reaper_interval_seconds
        self.batch_size = batch_size

    async def reap_once(self, now: Optional[datetime] = None) -> int:
        """
        Expire every live session past its deadline.

        Returns:
            Number of sessions expired in this pass
        """
        now = now or _utcnow()
        expired = 0

        for key in await self.store.list_expired(now, limit=self.batch_size):
            try:
                if await self._expire(key, now):
                    expired += 1
            except SessionStoreUnavailable:
                raise
            except Exception as e:
                logger.exception(f"Reaper could not expire session {key}: {e}")

        if expired:
            logger.info(f"Reaper expired {expired} sessions")
        return expired

    async def _expire(self, key: str, now: datetime) -> bool:
        """Expire one session. Returns False if it was skipped."""
        try:
            session = await self.store.get(key)
        except SessionNotFound:
            await self.store.forget_live(key)
            return False

        if session.is_terminal:
            await self.store.forget_live(key)
            return False
        if session.expires_at > now:
            return False

        expected = session.phase
        self.flow.expire(session, now)
        try:
            await self.store.update(session, expected)
        except SessionConflict:
            logger.info(f"Session {key} changed while expiring, skipping this round")
            return False
        except SessionNotFound:
            return False

        await self.escalation.report(
            session,
            EscalationReason.SESSION_EXPIRED,
            {"expired_from": expected.value},
            now=now,
        )
        return True

    async def run(self) -> None:
        """Reap forever at the configured interval. Stop by cancelling the task."""
        logger.info(f"Session reaper started (every {self.interval_seconds}s)")
        while True:
            try:
                await self.reap_once()
            except SessionStoreUnavailable as e:
                logger.warning(f"Reaper pass skipped: {e}")
            except Exception as e:
                logger.exception(f"Reaper pass failed: {e}")
            await asyncio.sleep(self.interval_seconds)
