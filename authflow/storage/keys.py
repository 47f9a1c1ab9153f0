"""Key builders for everything the engine writes to the key-value store.

Business logic never formats store keys itself; it goes through these
functions so the namespaces stay in one place.
"""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Iterable, List, Optional


class FlowNamespace(str, Enum):
    """Identifier index namespaces, one per OTP flow family."""

    SIGNUP = "signup"
    FORGOT = "forgot"


def normalize_identifier(identifier: Optional[str]) -> Optional[str]:
    """Trim an identifier and lowercase it when it is an e-mail address."""
    if identifier is None:
        return None
    value = identifier.strip()
    if not value:
        return None
    if "@" in value:
        return value.lower()
    return value


def classify_identifier(identifier: str) -> str:
    """Return ``email``, ``phone`` or ``username`` for a normalized identifier."""
    if "@" in identifier:
        return "email"
    digits = identifier[1:] if identifier.startswith("+") else identifier
    if digits.isdigit():
        return "phone"
    return "username"


_USER_FIELDS = {"email": "email", "phone": "phone_number", "username": "username"}


def user_field_for(identifier: str) -> str:
    """Name of the user attribute a normalized identifier is matched against."""
    return _USER_FIELDS[classify_identifier(identifier)]


def unique_identifiers(values: Iterable[Optional[str]]) -> List[str]:
    """Normalize and de-duplicate identifiers, keeping first-seen order."""
    seen: list[str] = []
    for value in values:
        normalized = normalize_identifier(value)
        if normalized and normalized not in seen:
            seen.append(normalized)
    return seen


def session_key(session_id: str) -> str:
    return f"auth:session:{session_id}"


def identifier_key(namespace: FlowNamespace, identifier: str) -> str:
    normalized = normalize_identifier(identifier)
    if not normalized:
        raise ValueError("identifier must be a non-empty string")
    return f"auth:{namespace.value}:{normalized}"


def user_sessions_key(user_id: str) -> str:
    return f"auth:user:{user_id}:sessions"


def rate_limit_key(ip: str, action: str, identifier: Optional[str] = None) -> str:
    """Build a fixed-window counter key for an (ip, action, identifier) tuple.

    The identifier is hashed so user-supplied text cannot inject delimiters
    into the key.
    """
    base = f"rate:{ip or 'unknown'}:{action}"
    normalized = normalize_identifier(identifier)
    if normalized:
        digest = hashlib.sha256(normalized.encode()).hexdigest()[:32]
        return f"{base}:{digest}"
    return base
