from __future__ import annotations

from typing import Any, List, Optional, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authflow.logging import get_logger
from authflow.storage.errors import StorageUnavailable

logger = get_logger(__name__)

_UNAVAILABLE = (RedisConnectionError, RedisTimeoutError, OSError)


class RedisBatch:
    """Queued commands executed as one MULTI/EXEC transaction.

    Either every queued command is applied or none are; callers never see a
    partially applied batch.
    """

    def __init__(self, pipeline: Any):
        self._pipe = pipeline
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> "RedisBatch":
        self._pipe.set(key, value, ex=ttl_seconds)
        self._size += 1
        return self

    def delete(self, *keys: str) -> "RedisBatch":
        if keys:
            self._pipe.delete(*keys)
            self._size += 1
        return self

    def sadd(self, key: str, *members: str) -> "RedisBatch":
        if members:
            self._pipe.sadd(key, *members)
            self._size += 1
        return self

    def srem(self, key: str, *members: str) -> "RedisBatch":
        if members:
            self._pipe.srem(key, *members)
            self._size += 1
        return self

    def expire(self, key: str, ttl_seconds: int) -> "RedisBatch":
        self._pipe.expire(key, ttl_seconds)
        self._size += 1
        return self

    def incr(self, key: str) -> "RedisBatch":
        self._pipe.incr(key)
        self._size += 1
        return self

    def pexpire(self, key: str, ttl_ms: int) -> "RedisBatch":
        self._pipe.pexpire(key, ttl_ms)
        self._size += 1
        return self

    def pttl(self, key: str) -> "RedisBatch":
        self._pipe.pttl(key)
        self._size += 1
        return self

    async def execute(self) -> List[Any]:
        if not self._size:
            return []
        try:
            return await self._pipe.execute()
        except _UNAVAILABLE as exc:
            logger.error("redis_batch_failed", error=str(exc), commands=self._size)
            raise StorageUnavailable(operation="batch") from exc


class RedisCache:
    """Thin Redis wrapper for session records, identifier links and counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return await getattr(self.client, operation)(*args, **kwargs)
        except _UNAVAILABLE as exc:
            logger.error("redis_command_failed", operation=operation, error=str(exc))
            raise StorageUnavailable(operation=operation) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self._call("set", key, value, ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", *keys))

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("sadd", key, *members))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("srem", key, *members))

    async def smembers(self, key: str) -> Set[str]:
        members = await self._call("smembers", key)
        return set(members or ())

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._call("expire", key, ttl_seconds))

    async def incr(self, key: str) -> int:
        return int(await self._call("incr", key))

    async def pexpire(self, key: str, ttl_ms: int) -> bool:
        return bool(await self._call("pexpire", key, ttl_ms))

    async def pttl(self, key: str) -> int:
        return int(await self._call("pttl", key))

    def batch(self) -> RedisBatch:
        return RedisBatch(self.client.pipeline(transaction=True))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisBatch", "RedisCache"]
