from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenTypeMismatchError,
)
from authflow.storage.models import TokenPair, now_ms

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Mints and verifies HS256 access/refresh tokens.

    Access and refresh tokens are signed with different keys so that one class
    can never be replayed as the other.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str = "authflow",
        audience: str = "authflow-clients",
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 15 * 24 * 3600,
        leeway_seconds: int = 0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("both signing keys are required")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh signing keys must differ")
        self._keys = {
            TokenType.ACCESS: access_secret.encode(),
            TokenType.REFRESH: refresh_secret.encode(),
        }
        self.issuer = issuer
        self.audience = audience
        self.ttls = {
            TokenType.ACCESS: access_ttl_seconds,
            TokenType.REFRESH: refresh_ttl_seconds,
        }
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], int] = now_ms
    ) -> "TokenIssuer":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
            clock=clock,
        )

    def _now(self) -> int:
        return self._clock() // 1000

    def _sign(self, token_type: TokenType, signing_input: str) -> str:
        digest = hmac.new(
            self._keys[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def issue(self, payload: Dict[str, Any], ttl_seconds: Optional[int] = None) -> str:
        """Sign ``payload`` (must carry ``sub``, ``sid`` and ``type``)."""
        token_type = TokenType(payload["type"])
        now = self._now()
        ttl = self.ttls[token_type] if ttl_seconds is None else int(ttl_seconds)
        claims = {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + ttl,
            "jti": str(uuid.uuid4()),
            **payload,
            "type": token_type.value,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(token_type, signing_input)}"

    def issue_pair(self, subject: str, session_id: str) -> TokenPair:
        return TokenPair(
            access_token=self.issue(
                {"sub": subject, "sid": session_id, "type": TokenType.ACCESS.value}
            ),
            refresh_token=self.issue(
                {"sub": subject, "sid": session_id, "type": TokenType.REFRESH.value}
            ),
        )

    def verify(self, token: Any, expected_type: TokenType) -> Dict[str, Any]:
        """Return the claims of a valid token of ``expected_type``.

        Raises ``TokenMalformedError``, ``TokenTypeMismatchError`` or
        ``TokenExpiredError``.
        """
        expected_type = TokenType(expected_type)
        if not isinstance(token, str) or not token.isascii() or token.count(".") != 2:
            raise TokenMalformedError("Token is malformed")
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenMalformedError("Token header is malformed") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenMalformedError("Token algorithm is not supported")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(expected_type, signing_input), sig_b64):
            other = (
                TokenType.REFRESH if expected_type == TokenType.ACCESS else TokenType.ACCESS
            )
            if hmac.compare_digest(self._sign(other, signing_input), sig_b64):
                raise TokenTypeMismatchError(
                    f"Expected a {expected_type.value.lower()} token"
                )
            raise TokenMalformedError("Token signature is invalid")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformedError("Token payload is malformed") from None
        if not isinstance(payload, dict):
            raise TokenMalformedError("Token payload is malformed")
        if payload.get("iss") != self.issuer:
            raise TokenMalformedError("Token issuer is invalid")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenMalformedError("Token audience is invalid")
        if payload.get("type") != expected_type.value:
            raise TokenTypeMismatchError(f"Expected a {expected_type.value.lower()} token")
        if not payload.get("sub") or not payload.get("sid"):
            raise TokenMalformedError("Token is missing subject or session")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformedError("Token expiry is invalid") from None
        if exp_ts <= self._now() - self.leeway_seconds:
            raise TokenExpiredError("Token has expired")
        return payload


__all__ = ["TokenIssuer", "TokenType"]
