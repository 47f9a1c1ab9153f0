from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class SessionType(str, Enum):
    """Flow family a session belongs to. Never changes after creation."""

    SIGNUP_VERIFY = "SIGNUP_VERIFY"
    RESET_PASSWORD = "RESET_PASSWORD"
    SIGNIN = "SIGNIN"


class AuthProvider(str, Enum):
    LOCAL = "LOCAL"
    GOOGLE = "GOOGLE"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    BLOCKED = "BLOCKED"
    SOFT_DELETED = "SOFT_DELETED"
    DELETED = "DELETED"


# dataclass attribute -> JSON key in the stored record
_SESSION_JSON_KEYS = {
    "type": "type",
    "email": "email",
    "username": "username",
    "phone_number": "phoneNumber",
    "user_id": "userId",
    "otp_hash": "otpHash",
    "otp_expires_at": "otpExpiresAt",
    "otp_attempts": "otpAttempts",
    "otp_resend_count": "otpResendCount",
    "used": "used",
    "verified": "verified",
    "last_activity_at": "lastActivityAt",
    "created_at": "createdAt",
}


@dataclass(frozen=True)
class AuthSession:
    """Ephemeral session record stored under ``auth:session:<id>``.

    Timestamps are absolute epoch milliseconds. The identity fields are a
    snapshot taken when the session was created.
    """

    type: SessionType
    created_at: int
    email: Optional[str] = None
    username: Optional[str] = None
    phone_number: Optional[str] = None
    user_id: Optional[str] = None
    otp_hash: Optional[str] = None
    otp_expires_at: Optional[int] = None
    otp_attempts: int = 0
    otp_resend_count: int = 0
    used: bool = False
    verified: bool = False
    last_activity_at: Optional[int] = None

    def __post_init__(self) -> None:
        if not isinstance(self.type, SessionType):
            object.__setattr__(self, "type", SessionType(self.type))
        if not (self.email or self.username or self.phone_number or self.user_id):
            raise ValueError("session identity snapshot requires at least one identifier")

    def display_identity(self) -> Dict[str, str]:
        """One identifier to show the user: email, else phone, else username."""
        if self.email:
            return {"email": self.email}
        if self.phone_number:
            return {"phoneNumber": self.phone_number}
        if self.username:
            return {"username": self.username}
        return {}

    def evolve(self, **changes: Any) -> "AuthSession":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for attr, key in _SESSION_JSON_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            data[key] = value.value if isinstance(value, Enum) else value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthSession":
        known = {f.name for f in fields(cls)}
        kwargs = {
            attr: data[key]
            for attr, key in _SESSION_JSON_KEYS.items()
            if key in data and attr in known
        }
        return cls(**kwargs)

    @classmethod
    def from_json(cls, raw: str) -> "AuthSession":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("session record must be a JSON object")
        return cls.from_dict(data)


@dataclass
class UserRecord:
    """User as returned by the user directory."""

    id: str
    email: str
    username: Optional[str] = None
    phone_number: Optional[str] = None
    password_hash: Optional[str] = None
    provider: AuthProvider = AuthProvider.LOCAL
    status: AccountStatus = AccountStatus.ACTIVE
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


@dataclass
class AuthContext:
    user_id: str
    session_id: str


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)
