"""Numeric one-time passcodes: generation, keyed hashing and verification.

Nothing here touches storage; callers persist only the hash.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Any


def generate(length: int = 6) -> str:
    """Return a uniformly random ``length``-digit code with no leading zero."""
    if length < 1:
        raise ValueError("otp length must be positive")
    low = 10 ** (length - 1)
    high = 10**length - 1
    return str(low + secrets.randbelow(high - low + 1))


def hash_code(code: str, secret: str) -> str:
    return hmac.new(secret.encode(), str(code).encode(), hashlib.sha256).hexdigest()


def verify(code: Any, stored_hash: Any, secret: str) -> bool:
    """Constant-time comparison of ``code`` against ``stored_hash``.

    Malformed input of any kind is a failed verification, never an exception.
    """
    if not isinstance(code, str) or not isinstance(stored_hash, str):
        return False
    if not code or not stored_hash:
        return False
    try:
        candidate = hash_code(code, secret)
        return hmac.compare_digest(candidate.encode(), stored_hash.encode())
    except (TypeError, ValueError, UnicodeError):
        return False


class OtpEngine:
    """Binds the code length and hashing secret used across the auth flows."""

    def __init__(self, secret: str, *, length: int = 6):
        if not secret:
            raise ValueError("otp secret is required")
        self._secret = secret
        self.length = length

    def generate(self) -> str:
        return generate(self.length)

    def hash(self, code: str) -> str:
        return hash_code(code, self._secret)

    def verify(self, code: Any, stored_hash: Any) -> bool:
        return verify(code, stored_hash, self._secret)
