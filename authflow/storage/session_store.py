from __future__ import annotations

import json
from typing import Any, List, Optional, Protocol, Set

from authflow.logging import get_logger
from authflow.storage.keys import session_key, user_sessions_key
from authflow.storage.models import AuthSession

logger = get_logger(__name__)


class CacheBatch(Protocol):
    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> Any: ...

    def delete(self, *keys: str) -> Any: ...

    def sadd(self, key: str, *members: str) -> Any: ...

    def srem(self, key: str, *members: str) -> Any: ...

    def expire(self, key: str, ttl_seconds: int) -> Any: ...

    def incr(self, key: str) -> Any: ...

    def pexpire(self, key: str, ttl_ms: int) -> Any: ...

    def pttl(self, key: str) -> Any: ...

    async def execute(self) -> List[Any]: ...


class KeyValueCache(Protocol):
    """Operations shared by ``RedisCache`` and ``MemoryCache``."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def incr(self, key: str) -> int: ...

    async def pexpire(self, key: str, ttl_ms: int) -> bool: ...

    async def pttl(self, key: str) -> int: ...

    def batch(self) -> CacheBatch: ...

    async def close(self) -> None: ...


def _require_ttl(ttl_seconds: int) -> int:
    ttl = int(ttl_seconds)
    if ttl <= 0:
        raise ValueError("session ttl must be positive")
    return ttl


class SessionStore:
    """Session records keyed by session id, expired only through store TTLs."""

    def __init__(self, cache: KeyValueCache):
        self.cache = cache

    async def create(self, session_id: str, record: AuthSession, ttl_seconds: int) -> None:
        # Writers always mint a fresh id, so a plain overwrite is enough
        await self.cache.set(
            session_key(session_id), record.to_json(), _require_ttl(ttl_seconds)
        )

    async def get(self, session_id: Optional[str]) -> Optional[AuthSession]:
        if not session_id:
            return None
        raw = await self.cache.get(session_key(session_id))
        if raw is None:
            return None
        try:
            return AuthSession.from_json(raw)
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            logger.warning(
                "session_record_corrupt", session_id=session_id, error=str(exc)
            )
            return None

    async def delete(self, session_id: str) -> None:
        await self.cache.delete(session_key(session_id))

    async def touch(self, session_id: str, record: AuthSession, ttl_seconds: int) -> None:
        """Replace the record in place and reset its TTL."""
        await self.create(session_id, record, ttl_seconds)

    async def remaining_ttl_ms(self, session_id: str) -> int:
        """Milliseconds until the record expires; -2 when missing, -1 without TTL."""
        return await self.cache.pttl(session_key(session_id))

    async def list_user_sessions(self, user_id: str) -> Set[str]:
        return await self.cache.smembers(user_sessions_key(user_id))

    def stage_create(
        self, batch: CacheBatch, session_id: str, record: AuthSession, ttl_seconds: int
    ) -> None:
        batch.set(session_key(session_id), record.to_json(), _require_ttl(ttl_seconds))

    def stage_delete(self, batch: CacheBatch, *session_ids: str) -> None:
        keys = [session_key(sid) for sid in session_ids if sid]
        if keys:
            batch.delete(*keys)

    def stage_track(
        self,
        batch: CacheBatch,
        user_id: str,
        session_id: str,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Add ``session_id`` to the user's active-session set."""
        batch.sadd(user_sessions_key(user_id), session_id)
        if ttl_seconds:
            batch.expire(user_sessions_key(user_id), int(ttl_seconds))

    def stage_untrack(self, batch: CacheBatch, user_id: str, *session_ids: str) -> None:
        if session_ids:
            batch.srem(user_sessions_key(user_id), *session_ids)

    def stage_drop_user_set(self, batch: CacheBatch, user_id: str) -> None:
        batch.delete(user_sessions_key(user_id))


__all__ = ["CacheBatch", "KeyValueCache", "SessionStore"]
