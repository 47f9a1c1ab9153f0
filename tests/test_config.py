"""Tests for settings loading and runtime wiring."""

import pytest
from pydantic import ValidationError

from authflow.config import Settings, get_settings, reset_settings_cache
from authflow.service.runtime import Runtime, _mask_url_password, reset_runtime_for_tests
from authflow.storage.memory import MemoryCache, MemoryDirectory


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_access_secret="a", jwt_refresh_secret="r", otp_secret="o")
        assert settings.otp_length == 6
        assert settings.otp_expires_in_seconds == 600
        assert settings.otp_max_attempts == 5
        assert settings.otp_max_resends == 3
        assert settings.otp_session_ttl_seconds == 86400
        assert settings.signin_session_ttl_seconds == 1296000
        assert settings.enforce_otp_expiry_on_verify is True
        assert settings.enforce_otp_attempts_on_verify is True

    def test_missing_secrets_are_generated_and_distinct(self):
        settings = Settings()
        assert settings.jwt_access_secret
        assert settings.jwt_access_secret != settings.jwt_refresh_secret

    def test_identical_signing_keys_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_access_secret="same", jwt_refresh_secret="same", otp_secret="o")

    def test_otp_length_bounds(self):
        with pytest.raises(ValidationError):
            Settings(jwt_access_secret="a", jwt_refresh_secret="r", otp_length=3)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("OTP_MAX_RESENDS", "7")
        monkeypatch.setenv("ENABLE_MULTI_DEVICE_LOGIN", "false")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        settings = Settings.from_env()
        assert settings.otp_max_resends == 7
        assert settings.enable_multi_device_login is False
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_settings_cache(self):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first

    def test_rate_limit_policies(self):
        policies = Settings(
            jwt_access_secret="a", jwt_refresh_secret="r", otp_secret="o"
        ).rate_limit_policies()
        assert set(policies) == {"signup", "signin", "otp", "password_reset", "auth"}
        assert (policies["signin"].limit, policies["signin"].window_seconds) == (10, 900)
        assert (policies["password_reset"].limit, policies["password_reset"].window_seconds) == (3, 3600)


class TestRuntime:
    def test_test_mode_uses_memory_cache(self):
        runtime = reset_runtime_for_tests()
        assert isinstance(runtime.cache, MemoryCache)
        assert isinstance(runtime.directory, MemoryDirectory)

    def test_injected_directory(self):
        directory = MemoryDirectory()
        runtime = reset_runtime_for_tests(directory=directory)
        assert runtime.auth.directory is directory

    def test_redis_required_without_fallback(self, monkeypatch):
        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.setenv("USE_MEMORY_STORE", "false")
        monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
        monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
        monkeypatch.setenv("REDIS_SOCKET_TIMEOUT", "0.2")
        reset_settings_cache()
        try:
            with pytest.raises(RuntimeError):
                Runtime()
        finally:
            monkeypatch.undo()
            reset_settings_cache()

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:secret@localhost:6379/0") == "redis://:***@localhost:6379/0"
        assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
