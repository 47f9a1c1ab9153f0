"""Tests for the session store, identifier index and in-memory cache."""

import pytest

from authflow.storage.identifier_index import IdentifierIndex
from authflow.storage.keys import (
    FlowNamespace,
    classify_identifier,
    identifier_key,
    normalize_identifier,
    rate_limit_key,
    session_key,
    user_sessions_key,
)
from authflow.storage.memory import MemoryCache
from authflow.storage.models import AuthSession, SessionType
from authflow.storage.session_store import SessionStore


def _session(**overrides):
    values = {
        "type": SessionType.SIGNUP_VERIFY,
        "created_at": 1_000,
        "email": "a@example.com",
        "user_id": "u1",
        "otp_hash": "h",
        "otp_expires_at": 601_000,
    }
    values.update(overrides)
    return AuthSession(**values)


class TestKeys:
    def test_layout(self):
        assert session_key("abc") == "auth:session:abc"
        assert user_sessions_key("u1") == "auth:user:u1:sessions"
        assert identifier_key(FlowNamespace.SIGNUP, " A@Example.com ") == "auth:signup:a@example.com"
        assert identifier_key(FlowNamespace.FORGOT, "bob") == "auth:forgot:bob"

    def test_usernames_keep_case(self):
        assert normalize_identifier(" Bob ") == "Bob"
        assert normalize_identifier("   ") is None

    def test_classify(self):
        assert classify_identifier("a@b.co") == "email"
        assert classify_identifier("+15550001111") == "phone"
        assert classify_identifier("bob") == "username"

    def test_rate_limit_key_hashes_identifier(self):
        key = rate_limit_key("1.2.3.4", "signin", "A@b.com")
        assert key.startswith("rate:1.2.3.4:signin:")
        assert "a@b.com" not in key
        assert key == rate_limit_key("1.2.3.4", "signin", "a@b.com")
        assert rate_limit_key("1.2.3.4", "signin") == "rate:1.2.3.4:signin"


class TestAuthSessionRecord:
    def test_json_uses_camel_case_and_omits_none(self):
        data = _session().to_dict()
        assert data["type"] == "SIGNUP_VERIFY"
        assert data["userId"] == "u1"
        assert data["otpExpiresAt"] == 601_000
        assert "phoneNumber" not in data
        assert AuthSession.from_json(_session().to_json()) == _session()

    def test_requires_an_identifier(self):
        with pytest.raises(ValueError):
            AuthSession(type=SessionType.SIGNIN, created_at=1)

    def test_display_identity_prefers_email_then_phone(self):
        assert _session().display_identity() == {"email": "a@example.com"}
        phone = _session(email=None, phone_number="+15550001111", username="bob")
        assert phone.display_identity() == {"phoneNumber": "+15550001111"}
        assert _session(email=None, username="bob").display_identity() == {"username": "bob"}


class TestSessionStore:
    async def test_create_get_delete(self, cache):
        store = SessionStore(cache)
        await store.create("s1", _session(), 60)
        assert await store.get("s1") == _session()
        await store.delete("s1")
        assert await store.get("s1") is None

    async def test_expires_with_ttl(self, cache, clock):
        store = SessionStore(cache)
        await store.create("s1", _session(), 60)
        clock.advance(seconds=59)
        assert await store.get("s1") is not None
        clock.advance(seconds=2)
        assert await store.get("s1") is None
        assert await store.remaining_ttl_ms("s1") == -2

    async def test_rejects_non_positive_ttl(self, cache):
        with pytest.raises(ValueError):
            await SessionStore(cache).create("s1", _session(), 0)

    async def test_corrupt_record_reads_as_missing(self, cache):
        await cache.set(session_key("bad"), "{not json", 60)
        await cache.set(session_key("list"), "[1, 2]", 60)
        store = SessionStore(cache)
        assert await store.get("bad") is None
        assert await store.get("list") is None

    async def test_touch_resets_ttl(self, cache, clock):
        store = SessionStore(cache)
        await store.create("s1", _session(), 60)
        clock.advance(seconds=50)
        await store.touch("s1", _session(otp_attempts=1), 60)
        assert await store.remaining_ttl_ms("s1") == 60_000
        assert (await store.get("s1")).otp_attempts == 1

    async def test_user_session_tracking(self, cache):
        store = SessionStore(cache)
        batch = cache.batch()
        store.stage_track(batch, "u1", "s1", 60)
        store.stage_track(batch, "u1", "s2", 60)
        await batch.execute()
        assert await store.list_user_sessions("u1") == {"s1", "s2"}

        batch = cache.batch()
        store.stage_untrack(batch, "u1", "s1")
        await batch.execute()
        assert await store.list_user_sessions("u1") == {"s2"}

        batch = cache.batch()
        store.stage_drop_user_set(batch, "u1")
        await batch.execute()
        assert await store.list_user_sessions("u1") == set()


class TestIdentifierIndex:
    async def test_link_resolve_unlink(self, cache):
        index = IdentifierIndex(cache, FlowNamespace.SIGNUP)
        await index.link("A@Example.com", "s1", 60)
        assert await index.resolve("a@example.com ") == "s1"
        await index.unlink("a@example.com")
        assert await index.resolve("a@example.com") is None

    async def test_namespaces_are_independent(self, cache):
        signup = IdentifierIndex(cache, FlowNamespace.SIGNUP)
        forgot = IdentifierIndex(cache, FlowNamespace.FORGOT)
        await signup.link("bob", "s1", 60)
        assert await forgot.resolve("bob") is None

    async def test_relinking_overwrites(self, cache):
        index = IdentifierIndex(cache, FlowNamespace.FORGOT)
        batch = cache.batch()
        index.stage_link(batch, ["a@example.com", None, "A@example.com", "bob"], "s1", 60)
        await batch.execute()
        batch = cache.batch()
        index.stage_link(batch, ["a@example.com"], "s2", 60)
        await batch.execute()
        assert await index.resolve("a@example.com") == "s2"
        assert await index.resolve("bob") == "s1"

    async def test_resolve_blank_is_none(self, cache):
        assert await IdentifierIndex(cache, FlowNamespace.SIGNUP).resolve("  ") is None


class TestMemoryCache:
    async def test_pttl_semantics(self, cache):
        assert await cache.pttl("missing") == -2
        await cache.set("plain", "1")
        assert await cache.pttl("plain") == -1
        await cache.set("timed", "1", 5)
        assert await cache.pttl("timed") == 5000

    async def test_incr_keeps_ttl(self, cache):
        await cache.incr("n")
        await cache.pexpire("n", 1000)
        assert await cache.incr("n") == 2
        assert await cache.pttl("n") == 1000

    async def test_failed_batch_applies_nothing(self, cache):
        await cache.sadd("members", "x")
        batch = cache.batch()
        batch.set("fresh", "1", 60)
        batch.delete("members")
        batch.set("broken", "1", -5)
        with pytest.raises(ValueError):
            await batch.execute()
        assert await cache.get("fresh") is None
        assert await cache.smembers("members") == {"x"}

    async def test_removing_last_member_deletes_set(self, cache):
        await cache.sadd("members", "x")
        await cache.srem("members", "x")
        assert await cache.pttl("members") == -2

    async def test_clock_is_injected(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", 1)
        clock.advance(ms=1001)
        assert await cache.get("k") is None
