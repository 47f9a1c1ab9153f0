"""Tests for fixed-window rate limiting."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import Response

from authflow.config import RateLimitPolicy
from authflow.service.errors import RateLimitedError
from authflow.service.rate_limit import RateLimiter
from authflow.storage.errors import StorageUnavailable


@pytest.fixture
def limiter(cache):
    return RateLimiter(
        cache,
        {
            "signin": RateLimitPolicy(limit=3, window_seconds=60, message="Slow down."),
            "open": RateLimitPolicy(limit=0, window_seconds=60),
        },
    )


class TestRateLimiter:
    async def test_allows_up_to_limit_then_refuses(self, limiter):
        infos = [await limiter.hit("signin", "1.1.1.1", "a@example.com") for _ in range(3)]
        assert [i.remaining for i in infos] == [2, 1, 0]
        with pytest.raises(RateLimitedError) as exc:
            await limiter.hit("signin", "1.1.1.1", "a@example.com")
        assert exc.value.message == "Slow down."
        assert exc.value.retry_after == 60
        assert exc.value.status_code == 429

    async def test_keys_are_per_ip_and_identifier(self, limiter):
        for _ in range(3):
            await limiter.hit("signin", "1.1.1.1", "a@example.com")
        assert (await limiter.hit("signin", "2.2.2.2", "a@example.com")).allowed
        assert (await limiter.hit("signin", "1.1.1.1", "b@example.com")).allowed

    async def test_window_resets(self, limiter, clock):
        for _ in range(3):
            await limiter.hit("signin", "1.1.1.1")
        clock.advance(seconds=61)
        info = await limiter.hit("signin", "1.1.1.1")
        assert info.remaining == 2
        assert info.reset_seconds == 60

    async def test_zero_limit_disables_policy(self, limiter):
        for _ in range(10):
            assert (await limiter.hit("open", "1.1.1.1")).allowed

    async def test_fails_open_when_store_unavailable(self):
        batch = MagicMock()
        batch.execute = AsyncMock(side_effect=StorageUnavailable(operation="batch"))
        cache = MagicMock()
        cache.batch.return_value = batch
        limiter = RateLimiter(cache, {"signin": RateLimitPolicy(limit=1, window_seconds=60)})
        info = await limiter.hit("signin", "1.1.1.1")
        assert info.allowed

    async def test_applies_headers(self, limiter):
        response = Response()
        info = await limiter.hit("signin", "1.1.1.1")
        info.apply_headers(response)
        assert response.headers["X-RateLimit-Limit"] == "3"
        assert response.headers["X-RateLimit-Remaining"] == "2"
        assert response.headers["X-RateLimit-Reset"] == "60"
