"""
Redis-backed negotiation session store.

Key pattern:
- followup:v1:session:{session_key} -> session JSON
- followup:v1:sessions:live -> sorted set of live keys scored by expires_at

``create`` and ``update`` run as Lua scripts so the existence or
phase/revision check and the write happen atomically on the server.
Concurrent reply workers never lock; the loser of a race gets
``SessionConflict`` and re-reads.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from followup.config import settings
from followup.core.errors import (
    SessionAlreadyExists,
    SessionConflict,
    SessionNotFound,
    SessionStoreUnavailable,
)
from followup.core.scheduling.state import TERMINAL_PHASES, NegotiationPhase
from followup.infra.redis import APP_PREFIX, get_redis
from .models import NegotiationSession

logger = logging.getLogger(__name__)

SESSION_PREFIX = f"{APP_PREFIX}session:"
LIVE_INDEX_KEY = f"{APP_PREFIX}sessions:live"

# KEYS: session key, live index
# ARGV: payload, expires score, index member, initiation id, terminal phases...
CREATE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if raw then
  local current = cjson.decode(raw)
  if current['initiation_id'] == ARGV[4] then return 0 end
  local phase = current['phase']
  local terminal = false
  for i = 5, #ARGV do
    if ARGV[i] == phase then terminal = true end
  end
  if not terminal then return 0 end
end
redis.call('SET', KEYS[1], ARGV[1])
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[3])
return 1
"""

# KEYS: session key, live index
# ARGV: payload, expected phase, expected revision, terminal flag,
#       retention seconds, expires score, index member
UPDATE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return -1 end
local current = cjson.decode(raw)
if current['phase'] ~= ARGV[2] or current['revision'] ~= tonumber(ARGV[3]) then
  return 0
end
if ARGV[4] == '1' then
  redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[5])
  redis.call('ZREM', KEYS[2], ARGV[7])
else
  redis.call('SET', KEYS[1], ARGV[1])
  redis.call('ZADD', KEYS[2], ARGV[6], ARGV[7])
end
return 1
"""


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class SessionStore:
    """
    Durable keyed store for negotiation sessions.

    At most one live (non-terminal) session exists per key. Terminal
    sessions stay readable for the audit retention window, then Redis
    expires them.
    """

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        audit_retention: Optional[timedelta] = None,
    ):
        """Initialize store.

        Args:
            redis_client: Redis client (uses the shared connection if not provided)
            audit_retention: How long terminal sessions are kept
        """
        self._redis = redis_client
        self._retention = audit_retention or settings.audit_retention

    def _key(self, session_key: str) -> str:
        """Generate Redis key."""
        return f"{SESSION_PREFIX}{session_key}"

    async def _client(self) -> Redis:
        client = self._redis or await get_redis()
        if client is None:
            raise SessionStoreUnavailable("Redis unavailable")
        return client

    async def create(self, session: NegotiationSession) -> NegotiationSession:
        """
        Store a new session.

        A terminal session under the same key is replaced; a live one is not.
        A session opened by the same initiation is never replaced, so a
        redelivered initiation cannot restart a finished negotiation.

        Raises:
            SessionAlreadyExists: If a live session exists for the key, or
                any session from the same initiation
        """
        client = await self._client()
        try:
            created = await client.eval(
                CREATE_SCRIPT,
                2,
                self._key(session.session_key),
                LIVE_INDEX_KEY,
                session.to_json(),
                session.expires_at.timestamp(),
                session.session_key,
                session.initiation_id,
                *[phase.value for phase in TERMINAL_PHASES],
            )
        except RedisError as e:
            raise SessionStoreUnavailable(f"Failed to create session: {e}") from e

        if not created:
            raise SessionAlreadyExists(session.session_key)

        logger.debug(f"Session created: {session.session_key}")
        return session

    async def get(self, session_key: str) -> NegotiationSession:
        """
        Get session by key.

        Raises:
            SessionNotFound: If no session (live or retained) exists
        """
        client = await self._client()
        try:
            data = await client.get(self._key(session_key))
        except RedisError as e:
            raise SessionStoreUnavailable(f"Failed to read session: {e}") from e

        if data is None:
            raise SessionNotFound(session_key)
        return NegotiationSession.from_json(data)

    async def update(
        self,
        session: NegotiationSession,
        expected_phase: NegotiationPhase,
    ) -> NegotiationSession:
        """
        Compare-and-swap write.

        Succeeds only if the stored record still has ``expected_phase`` and
        the revision the caller read. On success ``session.revision`` is
        bumped; on failure the caller's copy is left as it was.

        Raises:
            SessionConflict: If the stored session changed since it was read
            SessionNotFound: If the session disappeared
        """
        read_revision = session.revision
        session.revision = read_revision + 1
        terminal = session.is_terminal

        client = await self._client()
        try:
            result = await client.eval(
                UPDATE_SCRIPT,
                2,
                self._key(session.session_key),
                LIVE_INDEX_KEY,
                session.to_json(),
                expected_phase.value,
                read_revision,
                "1" if terminal else "0",
                max(int(self._retention.total_seconds()), 1),
                session.expires_at.timestamp(),
                session.session_key,
            )
        except RedisError as e:
            session.revision = read_revision
            raise SessionStoreUnavailable(f"Failed to update session: {e}") from e

        if result == -1:
            session.revision = read_revision
            raise SessionNotFound(session.session_key)
        if result == 0:
            session.revision = read_revision
            logger.info(
                f"CAS conflict on {session.session_key} "
                f"(expected {expected_phase.value} rev {read_revision})"
            )
            raise SessionConflict(session.session_key, expected_phase.value)

        logger.debug(
            f"Session {session.session_key} saved: {session.phase.value} rev {session.revision}"
        )
        return session

    async def delete(self, session_key: str) -> bool:
        """
        Delete a session and drop it from the live index.

        Returns:
            True if a record was deleted
        """
        client = await self._client()
        try:
            deleted = await client.delete(self._key(session_key))
            await client.zrem(LIVE_INDEX_KEY, session_key)
        except RedisError as e:
            raise SessionStoreUnavailable(f"Failed to delete session: {e}") from e

        if deleted:
            logger.debug(f"Session deleted: {session_key}")
        return bool(deleted)

    async def list_expired(self, now: Optional[datetime] = None, limit: int = 100) -> list[str]:
        """Keys of live sessions whose expires_at has passed."""
        now = now or _utcnow()
        client = await self._client()
        try:
            keys = await client.zrangebyscore(
                LIVE_INDEX_KEY, "-inf", now.timestamp(), start=0, num=limit
            )
        except RedisError as e:
            raise SessionStoreUnavailable(f"Failed to scan expired sessions: {e}") from e
        return list(keys)

    async def forget_live(self, session_key: str) -> None:
        """Drop a key from the live index without touching the record."""
        client = await self._client()
        try:
            await client.zrem(LIVE_INDEX_KEY, session_key)
        except RedisError as e:
            raise SessionStoreUnavailable(f"Failed to update live index: {e}") from e


# Singleton
_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    """Get singleton SessionStore."""
    global _store
    if _store is None:
        _store = SessionStore()
    return _store
