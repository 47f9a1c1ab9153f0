"""Tests for access/refresh token issuing and verification."""

import base64
import json

import pytest

from authflow.service.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenTypeMismatchError,
)
from authflow.service.tokens import TokenIssuer, TokenType
from conftest import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        access_secret="access-key",
        refresh_secret="refresh-key",
        access_ttl_seconds=900,
        refresh_ttl_seconds=3600,
        clock=clock,
    )


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    claims = json.loads(base64.urlsafe_b64decode(padded))
    claims.update(changes)
    encoded = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{encoded}.{sig}"


class TestIssue:
    def test_pair_carries_subject_and_session(self, issuer):
        pair = issuer.issue_pair("user-1", "sid-1")
        access = issuer.verify(pair.access_token, TokenType.ACCESS)
        refresh = issuer.verify(pair.refresh_token, TokenType.REFRESH)
        assert access["sub"] == refresh["sub"] == "user-1"
        assert access["sid"] == refresh["sid"] == "sid-1"
        assert access["type"] == "ACCESS"
        assert refresh["type"] == "REFRESH"
        assert pair.token_type == "bearer"

    def test_claims_include_registered_fields(self, issuer, clock):
        token = issuer.issue({"sub": "u", "sid": "s", "type": "ACCESS"})
        claims = issuer.verify(token, TokenType.ACCESS)
        assert claims["iss"] == "authflow"
        assert claims["aud"] == "authflow-clients"
        assert claims["iat"] == clock.now // 1000
        assert claims["exp"] == claims["iat"] + 900
        assert claims["jti"]

    def test_equal_keys_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer(access_secret="same", refresh_secret="same")


class TestVerify:
    def test_access_presented_as_refresh(self, issuer):
        pair = issuer.issue_pair("u", "s")
        with pytest.raises(TokenTypeMismatchError):
            issuer.verify(pair.access_token, TokenType.REFRESH)

    def test_refresh_presented_as_access(self, issuer):
        pair = issuer.issue_pair("u", "s")
        with pytest.raises(TokenTypeMismatchError):
            issuer.verify(pair.refresh_token, TokenType.ACCESS)

    def test_expired_token(self, issuer, clock):
        pair = issuer.issue_pair("u", "s")
        clock.advance(seconds=901)
        with pytest.raises(TokenExpiredError) as exc:
            issuer.verify(pair.access_token, TokenType.ACCESS)
        assert exc.value.error_code == "token_expired"
        # Refresh token outlives the access token
        assert issuer.verify(pair.refresh_token, TokenType.REFRESH)["sid"] == "s"

    def test_token_from_other_issuer_is_malformed(self, issuer):
        foreign = TokenIssuer(access_secret="other-a", refresh_secret="other-r")
        token = foreign.issue_pair("u", "s").access_token
        with pytest.raises(TokenMalformedError):
            issuer.verify(token, TokenType.ACCESS)

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d", "é.é.é"])
    def test_garbage_is_malformed(self, issuer, token):
        with pytest.raises(TokenMalformedError):
            issuer.verify(token, TokenType.ACCESS)

    def test_tampered_payload_is_malformed(self, issuer):
        token = issuer.issue_pair("u", "s").access_token
        with pytest.raises(TokenMalformedError):
            issuer.verify(_tamper_payload(token, sub="someone-else"), TokenType.ACCESS)

    def test_wrong_audience_is_malformed(self, clock):
        other = TokenIssuer(
            access_secret="access-key",
            refresh_secret="refresh-key",
            audience="elsewhere",
            clock=clock,
        )
        issuer = TokenIssuer(access_secret="access-key", refresh_secret="refresh-key", clock=clock)
        with pytest.raises(TokenMalformedError):
            issuer.verify(other.issue_pair("u", "s").access_token, TokenType.ACCESS)

    def test_missing_session_claim_is_malformed(self, issuer):
        token = issuer.issue({"sub": "u", "type": "ACCESS"})
        with pytest.raises(TokenMalformedError):
            issuer.verify(token, TokenType.ACCESS)
