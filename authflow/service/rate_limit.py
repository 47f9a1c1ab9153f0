from __future__ import annotations

import math
from typing import Dict, Optional

from authflow.config import RateLimitPolicy
from authflow.logging import get_logger
from authflow.service.errors import RateLimitedError
from authflow.storage.errors import StorageUnavailable
from authflow.storage.keys import rate_limit_key
from authflow.storage.session_store import KeyValueCache

logger = get_logger(__name__)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("allowed", "limit", "remaining", "reset_ms")

    def __init__(self, allowed: bool, limit: int, remaining: int, reset_ms: int):
        self.allowed = allowed
        self.limit = limit
        self.remaining = remaining
        self.reset_ms = reset_ms

    @property
    def reset_seconds(self) -> int:
        return math.ceil(max(self.reset_ms, 0) / 1000)

    def apply_headers(self, response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


class RateLimiter:
    """Fixed-window counters keyed by (ip, action, identifier).

    The counter is incremented and its TTL read in one batch; the window is
    armed on the first hit. Concurrent first hits may overcount slightly. When
    the store is unreachable the limiter lets the request through.
    """

    def __init__(self, cache: KeyValueCache, policies: Dict[str, RateLimitPolicy]):
        self.cache = cache
        self.policies = policies

    async def hit(
        self,
        action: str,
        ip: str,
        identifier: Optional[str] = None,
        *,
        policy: Optional[RateLimitPolicy] = None,
    ) -> RateLimitInfo:
        """Count one request and raise ``RateLimitedError`` past the limit."""
        policy = policy or self.policies[action]
        if policy.limit <= 0:
            return RateLimitInfo(True, policy.limit, policy.limit, 0)
        window_ms = max(policy.window_seconds, 1) * 1000
        key = rate_limit_key(ip, action, identifier)
        try:
            batch = self.cache.batch()
            batch.incr(key)
            batch.pttl(key)
            count, ttl_ms = await batch.execute()
            count, ttl_ms = int(count), int(ttl_ms)
            if count == 1 or ttl_ms < 0:
                await self.cache.pexpire(key, window_ms)
                ttl_ms = window_ms
        except StorageUnavailable as exc:
            logger.warning("rate_limit_fail_open", action=action, error=str(exc))
            return RateLimitInfo(True, policy.limit, policy.limit, 0)

        info = RateLimitInfo(
            count <= policy.limit, policy.limit, max(0, policy.limit - count), ttl_ms
        )
        if not info.allowed:
            logger.warning("rate_limit_exceeded", action=action, count=count, limit=policy.limit)
            raise RateLimitedError(
                policy.message,
                retry_after=info.reset_seconds,
                detail={"limit": policy.limit, "remaining": 0},
            )
        return info


__all__ = ["RateLimitInfo", "RateLimiter"]
