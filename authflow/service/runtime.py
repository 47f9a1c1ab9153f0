from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authflow.config import get_settings, reset_settings_cache
from authflow.logging import get_logger
from authflow.service.auth import AuthService, UserDirectory
from authflow.service.notifications import NotificationService
from authflow.service.passwords import PasswordHasher
from authflow.service.rate_limit import RateLimiter
from authflow.service.tokens import TokenIssuer
from authflow.storage.memory import MemoryCache, MemoryDirectory
from authflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, directory: Optional[UserDirectory] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.cache: Union[RedisCache, MemoryCache] = self._build_cache()
        self.directory = directory or MemoryDirectory()
        self.notifications = NotificationService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.tokens = TokenIssuer.from_settings(self.settings)
        self.rate_limiter = RateLimiter(self.cache, self.settings.rate_limit_policies())
        self.auth = AuthService(
            self.cache,
            self.directory,
            self.notifications,
            self.settings,
            password_hasher=PasswordHasher(),
            token_issuer=self.tokens,
        )

        logger.info(
            "runtime_initialized",
            cache_type=type(self.cache).__name__,
            email_configured=self.notifications.is_configured,
            multi_device_login=self.settings.enable_multi_device_login,
        )

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        if self.settings.use_memory_store or self.settings.test_mode:
            return MemoryCache()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for auth sessions and rate limits; start Redis or set "
                "USE_MEMORY_STORE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                "Running without Redis under ALLOW_REDIS_FALLBACK_DEV; sessions and "
                "rate limits are in-process only."
            ),
        )
        return MemoryCache()

    async def shutdown(self) -> None:
        await self.auth.drain_notifications()
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the first check skips the lock once the runtime
    exists, the second prevents two threads from building it concurrently.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, directory: Optional[UserDirectory] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.cache.close())
            else:
                loop.create_task(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(directory=directory)
        return runtime
