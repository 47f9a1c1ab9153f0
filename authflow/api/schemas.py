from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "token_expired",
    "token_malformed",
    "token_type_mismatch",
    "forbidden",
    "not_found",
    "gone",
    "invalid_state",
    "invalid_otp",
    "rate_limited",
    "validation_error",
    "conflict",
    "storage_unavailable",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """Strip bidi override characters and apply NFKC normalization."""
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{6,15}$")
_OTP_PATTERN = re.compile(r"^[0-9]{4,10}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not 3 <= len(value) <= 32:
        raise ValueError("username must be between 3 and 32 characters")
    if not _USERNAME_PATTERN.match(value) or value.isdigit():
        raise ValueError("username may contain letters, digits, '.', '_' and '-' and cannot be all digits")
    return value


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    compact = re.sub(r"[\s()-]", "", value)
    if not _PHONE_PATTERN.match(compact):
        raise ValueError("invalid phone number")
    return compact


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_otp(value: str) -> str:
    value = value.strip()
    if not _OTP_PATTERN.match(value):
        raise ValueError("otp must be a numeric code")
    return value


class SignupRequest(BaseModel):
    email: str
    password: str
    username: Optional[str] = None
    phone_number: Optional[str] = None
    first_name: Optional[str] = Field(default=None, max_length=64)
    last_name: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)

    @field_validator("phone_number")
    @classmethod
    def _validate_phone_number(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class SessionTokenRequest(BaseModel):
    session_token: str = Field(..., min_length=1, max_length=128)


class ResendRequest(BaseModel):
    """Either a session token or an identifier (email, username or phone)."""

    session_token: Optional[str] = Field(default=None, max_length=128)
    identifier: Optional[str] = Field(default=None, max_length=254)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value.strip()) or None

    @model_validator(mode="after")
    def _require_one(self):
        if not self.session_token and not self.identifier:
            raise ValueError("session_token or identifier is required")
        return self


class VerifyOtpRequest(BaseModel):
    session_token: str = Field(..., min_length=1, max_length=128)
    otp: str

    @field_validator("otp")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _validate_otp(value)


class ResetPasswordRequest(VerifyOtpRequest):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SigninRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class SessionTokenResponse(BaseModel):
    session_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"


class SigninResponse(TokenResponse):
    user_id: str
    session_id: str
    email: str
    username: Optional[str] = None


class SessionIdentityResponse(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    username: Optional[str] = None


class LogoutAllResponse(BaseModel):
    revoked: int


class LogoutRequest(BaseModel):
    """Optional body; without ``session_id`` the caller's own session ends."""

    session_id: Optional[str] = Field(default=None, max_length=128)
