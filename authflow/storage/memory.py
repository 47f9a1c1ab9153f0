from __future__ import annotations

import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from authflow.logging import get_logger
from authflow.storage.errors import ConstraintViolation
from authflow.storage.keys import normalize_identifier, user_field_for
from authflow.storage.models import AccountStatus, AuthProvider, UserRecord, now_ms


class MemoryBatch:
    """Buffered commands applied to a ``MemoryCache`` in one locked step."""

    def __init__(self, cache: "MemoryCache"):
        self._cache = cache
        self._ops: List[Tuple[str, tuple]] = []

    def __len__(self) -> int:
        return len(self._ops)

    def _queue(self, op: str, *args: Any) -> "MemoryBatch":
        self._ops.append((op, args))
        return self

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> "MemoryBatch":
        return self._queue("set", key, value, ttl_seconds)

    def delete(self, *keys: str) -> "MemoryBatch":
        return self._queue("delete", *keys) if keys else self

    def sadd(self, key: str, *members: str) -> "MemoryBatch":
        return self._queue("sadd", key, *members) if members else self

    def srem(self, key: str, *members: str) -> "MemoryBatch":
        return self._queue("srem", key, *members) if members else self

    def expire(self, key: str, ttl_seconds: int) -> "MemoryBatch":
        return self._queue("expire", key, ttl_seconds)

    def incr(self, key: str) -> "MemoryBatch":
        return self._queue("incr", key)

    def pexpire(self, key: str, ttl_ms: int) -> "MemoryBatch":
        return self._queue("pexpire", key, ttl_ms)

    def pttl(self, key: str) -> "MemoryBatch":
        return self._queue("pttl", key)

    async def execute(self) -> List[Any]:
        ops, self._ops = self._ops, []
        return self._cache._apply_batch(ops)


class MemoryCache:
    """In-process stand-in for ``RedisCache`` used in tests and local fallback.

    Mirrors the Redis semantics the engine relies on: string values and sets
    with millisecond expiry, ``PTTL`` returning -2 for missing keys and -1 for
    keys without expiry, and batches that apply all commands or none.
    """

    def __init__(self, *, clock: Callable[[], int] = now_ms) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, int] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # -- internal, lock held by caller ---------------------------------------

    def _purge(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def _live(self, key: str) -> Any:
        self._purge(key)
        return self._data.get(key)

    def _op_get(self, key: str) -> Optional[str]:
        value = self._live(key)
        if isinstance(value, set):
            raise TypeError(f"WRONGTYPE operation against set key {key}")
        return value

    def _op_set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        self._data[key] = str(value)
        if ttl_seconds is not None:
            if ttl_seconds <= 0:
                raise ValueError("invalid expire time in 'set' command")
            self._expires[key] = self._clock() + int(ttl_seconds) * 1000
        else:
            self._expires.pop(key, None)
        return True

    def _op_delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return removed

    def _op_sadd(self, key: str, *members: str) -> int:
        current = self._live(key)
        if current is None:
            current = set()
            self._data[key] = current
        elif not isinstance(current, set):
            raise TypeError(f"WRONGTYPE operation against string key {key}")
        before = len(current)
        current.update(members)
        return len(current) - before

    def _op_srem(self, key: str, *members: str) -> int:
        current = self._live(key)
        if not isinstance(current, set):
            return 0
        before = len(current)
        current.difference_update(members)
        if not current:
            self._op_delete(key)
        return before - len(current)

    def _op_smembers(self, key: str) -> Set[str]:
        current = self._live(key)
        return set(current) if isinstance(current, set) else set()

    def _op_pexpire(self, key: str, ttl_ms: int) -> bool:
        if self._live(key) is None:
            return False
        if ttl_ms <= 0:
            self._op_delete(key)
        else:
            self._expires[key] = self._clock() + int(ttl_ms)
        return True

    def _op_expire(self, key: str, ttl_seconds: int) -> bool:
        return self._op_pexpire(key, int(ttl_seconds) * 1000)

    def _op_incr(self, key: str) -> int:
        current = self._live(key)
        value = int(current or 0) + 1
        self._data[key] = str(value)
        return value

    def _op_pttl(self, key: str) -> int:
        if self._live(key) is None:
            return -2
        deadline = self._expires.get(key)
        if deadline is None:
            return -1
        return max(0, deadline - self._clock())

    def _apply_batch(self, ops: List[Tuple[str, tuple]]) -> List[Any]:
        with self._data_lock:
            data = {
                k: set(v) if isinstance(v, set) else v for k, v in self._data.items()
            }
            expires = dict(self._expires)
            try:
                return [getattr(self, f"_op_{op}")(*args) for op, args in ops]
            except Exception:
                # Roll back so a failed batch leaves nothing half-applied
                self._data, self._expires = data, expires
                raise

    def _run(self, op: str, *args: Any) -> Any:
        with self._data_lock:
            return getattr(self, f"_op_{op}")(*args)

    # -- public async surface --------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        return self._run("get", key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._run("set", key, value, ttl_seconds)

    async def delete(self, *keys: str) -> int:
        return self._run("delete", *keys)

    async def sadd(self, key: str, *members: str) -> int:
        return self._run("sadd", key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return self._run("srem", key, *members)

    async def smembers(self, key: str) -> Set[str]:
        return self._run("smembers", key)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return self._run("expire", key, ttl_seconds)

    async def incr(self, key: str) -> int:
        return self._run("incr", key)

    async def pexpire(self, key: str, ttl_ms: int) -> bool:
        return self._run("pexpire", key, ttl_ms)

    async def pttl(self, key: str) -> int:
        return self._run("pttl", key)

    def batch(self) -> MemoryBatch:
        return MemoryBatch(self)

    async def close(self) -> None:
        with self._data_lock:
            self._data.clear()
            self._expires.clear()


class MemoryDirectory:
    """In-memory user directory keyed by id with identifier lookups."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserRecord] = {}
        self._data_lock = threading.RLock()

    def _matches(self, user: UserRecord, identifier: str) -> bool:
        field_name = user_field_for(identifier)
        return normalize_identifier(getattr(user, field_name)) == identifier

    def find_by_identifier(self, identifier: Optional[str]) -> Optional[UserRecord]:
        normalized = normalize_identifier(identifier)
        if not normalized:
            return None
        with self._data_lock:
            return next(
                (u for u in self.users.values() if self._matches(u, normalized)), None
            )

    def create_user(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        phone_number: Optional[str] = None,
        password_hash: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        provider: AuthProvider = AuthProvider.LOCAL,
        status: AccountStatus = AccountStatus.ACTIVE,
        email_verified: bool = False,
    ) -> UserRecord:
        with self._data_lock:
            for field_name, value in (
                ("email", email),
                ("username", username),
                ("phone_number", phone_number),
            ):
                if value and self.find_by_identifier(value):
                    raise ConstraintViolation(
                        f"{field_name} already exists", {"field": field_name}
                    )
            user = UserRecord(
                id=str(uuid.uuid4()),
                email=normalize_identifier(email) or email,
                username=normalize_identifier(username),
                phone_number=normalize_identifier(phone_number),
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                provider=provider,
                status=status,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            self.logger.info("directory_user_created", user_id=user.id)
            return user

    def update_user_by_id(self, user_id: Optional[str], patch: Dict[str, Any]) -> Optional[UserRecord]:
        if not user_id:
            return None
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in patch.items():
                if not hasattr(user, name):
                    raise ValueError(f"unknown user field: {name}")
                setattr(user, name, value)
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            return self.users.pop(user_id, None) is not None


__all__ = ["MemoryBatch", "MemoryCache", "MemoryDirectory"]
