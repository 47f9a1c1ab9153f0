from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authflow.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class RateLimitPolicy(BaseModel):
    """Fixed-window limit for one auth action."""

    limit: int
    window_seconds: int
    message: str = "Too many requests. Please try again later."


class Settings(BaseModel):
    """Runtime settings for the session/OTP engine."""

    # Key-value store
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use in-memory collaborators and deterministic test behaviors.",
    )

    # Tokens
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authflow", "JWT_ISSUER")
    jwt_audience: str = env_field("authflow-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(15 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    signin_session_ttl_seconds: int = env_field(1296000, "SIGNIN_SESSION_TTL_SECONDS")

    # One-time passcodes
    otp_secret: str = env_field(None, "OTP_SECRET", validate_default=True)
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_expires_in_seconds: int = env_field(600, "OTP_EXPIRES_IN_SECONDS")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_max_resends: int = env_field(3, "OTP_MAX_RESENDS")
    otp_session_ttl_seconds: int = env_field(86400, "OTP_SESSION_TTL_SECONDS")
    enforce_otp_expiry_on_verify: bool = env_field(
        True,
        "ENFORCE_OTP_EXPIRY_ON_VERIFY",
        description="Reject verification once otpExpiresAt has passed",
    )
    enforce_otp_attempts_on_verify: bool = env_field(
        True,
        "ENFORCE_OTP_ATTEMPTS_ON_VERIFY",
        description="Count verification attempts and reject past OTP_MAX_ATTEMPTS",
    )

    # Auth behavior
    enable_multi_device_login: bool = env_field(True, "ENABLE_MULTI_DEVICE_LOGIN")
    enable_inactivity_logout: bool = env_field(True, "ENABLE_INACTIVITY_LOGOUT")
    inactivity_logout_days: int = env_field(7, "INACTIVITY_LOGOUT_DAYS")
    revoke_sessions_on_password_reset: bool = env_field(
        True, "REVOKE_SESSIONS_ON_PASSWORD_RESET"
    )

    # Rate limits (per client IP, optionally per identifier)
    signup_rate_limit: int = env_field(15, "SIGNUP_RATE_LIMIT")
    signup_rate_window_seconds: int = env_field(15 * 60, "SIGNUP_RATE_WINDOW_SECONDS")
    signin_rate_limit: int = env_field(10, "SIGNIN_RATE_LIMIT")
    signin_rate_window_seconds: int = env_field(15 * 60, "SIGNIN_RATE_WINDOW_SECONDS")
    otp_rate_limit: int = env_field(5, "OTP_RATE_LIMIT")
    otp_rate_window_seconds: int = env_field(10 * 60, "OTP_RATE_WINDOW_SECONDS")
    reset_rate_limit: int = env_field(3, "RESET_RATE_LIMIT")
    reset_rate_window_seconds: int = env_field(60 * 60, "RESET_RATE_WINDOW_SECONDS")
    auth_rate_limit: int = env_field(10, "AUTH_RATE_LIMIT")
    auth_rate_window_seconds: int = env_field(60, "AUTH_RATE_WINDOW_SECONDS")

    # Email delivery (logged instead of sent when SMTP_HOST is unset)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authflow", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_access_secret", "jwt_refresh_secret", "otp_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if value:
            return value
        # Tokens and pending OTPs will not survive a restart with a generated secret
        logger.warning(
            "secret_generated",
            setting=info.field_name,
            message="No secret configured; generated an ephemeral one for this process",
        )
        return secrets.token_urlsafe(64)

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if value < 4 or value > 10:
            raise ValueError("otp_length must be between 4 and 10")
        return value

    @model_validator(mode="after")
    def _distinct_signing_keys(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    def rate_limit_policies(self) -> dict[str, RateLimitPolicy]:
        return {
            "signup": RateLimitPolicy(
                limit=self.signup_rate_limit,
                window_seconds=self.signup_rate_window_seconds,
                message="Too many signup attempts. Please try again later.",
            ),
            "signin": RateLimitPolicy(
                limit=self.signin_rate_limit,
                window_seconds=self.signin_rate_window_seconds,
                message="Too many signin attempts. Please try again later.",
            ),
            "otp": RateLimitPolicy(
                limit=self.otp_rate_limit,
                window_seconds=self.otp_rate_window_seconds,
                message="Too many OTP verification attempts. Please try again later.",
            ),
            "password_reset": RateLimitPolicy(
                limit=self.reset_rate_limit,
                window_seconds=self.reset_rate_window_seconds,
                message="Too many password reset attempts. Please try again later.",
            ),
            "auth": RateLimitPolicy(
                limit=self.auth_rate_limit,
                window_seconds=self.auth_rate_window_seconds,
            ),
        }


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
