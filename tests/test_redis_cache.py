"""Unit tests for the Redis adapter with the client stubbed out."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authflow.storage.errors import StorageUnavailable
from authflow.storage.redis_cache import RedisBatch, RedisCache


@pytest.fixture
def redis_cache():
    cache = RedisCache("redis://localhost:6379/15")
    cache.client = MagicMock()
    return cache


class TestRedisBatch:
    async def test_queues_commands_on_transactional_pipeline(self, redis_cache):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[True, 1, 1])
        redis_cache.client.pipeline.return_value = pipe

        batch = redis_cache.batch()
        batch.set("auth:session:s1", "{}", 60)
        batch.sadd("auth:user:u1:sessions", "s1")
        batch.expire("auth:user:u1:sessions", 60)
        result = await batch.execute()

        redis_cache.client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with("auth:session:s1", "{}", ex=60)
        pipe.sadd.assert_called_once_with("auth:user:u1:sessions", "s1")
        assert result == [True, 1, 1]
        assert len(batch) == 3

    async def test_empty_batch_is_not_sent(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock()
        batch = RedisBatch(pipe)
        batch.delete()
        batch.srem("k")
        assert await batch.execute() == []
        pipe.execute.assert_not_called()

    async def test_connection_failure_maps_to_storage_unavailable(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(side_effect=RedisConnectionError("down"))
        batch = RedisBatch(pipe)
        batch.incr("rate:1.1.1.1:signin")
        with pytest.raises(StorageUnavailable) as exc:
            await batch.execute()
        assert exc.value.operation == "batch"


class TestRedisCache:
    async def test_set_passes_ttl_as_seconds(self, redis_cache):
        redis_cache.client.set = AsyncMock(return_value=True)
        await redis_cache.set("k", "v", 30)
        redis_cache.client.set.assert_awaited_once_with("k", "v", ex=30)

    async def test_smembers_returns_set(self, redis_cache):
        redis_cache.client.smembers = AsyncMock(return_value=["a", "b"])
        assert await redis_cache.smembers("k") == {"a", "b"}

    async def test_delete_without_keys_skips_round_trip(self, redis_cache):
        redis_cache.client.delete = AsyncMock()
        assert await redis_cache.delete() == 0
        redis_cache.client.delete.assert_not_called()

    async def test_command_failure_maps_to_storage_unavailable(self, redis_cache):
        redis_cache.client.get = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(StorageUnavailable) as exc:
            await redis_cache.get("k")
        assert exc.value.operation == "get"
