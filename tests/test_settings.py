"""Tests for application settings and startup validation."""

import pytest

from config.settings import (
    AuthoritySettings,
    Settings,
    StartupConfigurationError,
    VerificationSettings,
    get_settings,
    validate_startup_config,
)


LIVE_ENV = {
    "EFILING_VERIFY_PROVIDER_MODE": "live",
    "EFILING_VERIFY_IDENTITY_BASE_URL": "https://identity.example.in",
    "EFILING_AUTHORITY_MODE": "live",
    "EFILING_AUTHORITY_BASE_URL": "https://eri.example.in",
    "EFILING_AUTHORITY_API_KEY": "eri-key",
}


class TestVerificationSettings:
    def test_defaults(self):
        settings = VerificationSettings()
        assert settings.otp_ttl_seconds == 300
        assert settings.dsc_ttl_seconds == 900
        assert settings.redirect_ttl_seconds == 600
        assert settings.max_attempts == 3
        assert settings.max_resends == 3
        assert settings.resend_interval_seconds == 60
        assert settings.provider_mode == "sandbox"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("EFILING_VERIFY_OTP_TTL_SECONDS", "120")
        assert VerificationSettings().otp_ttl_seconds == 120

    def test_ttl_floor(self):
        with pytest.raises(ValueError):
            VerificationSettings(otp_ttl_seconds=5)


class TestAuthoritySettings:
    def test_defaults(self):
        settings = AuthoritySettings()
        assert settings.mode == "sandbox"
        assert settings.stale_claim_seconds == 120
        assert settings.api_key is None


class TestSettings:
    """Tests for the top-level Settings model."""

    def test_defaults(self):
        settings = Settings(environment="development")
        assert settings.storage_backend == "memory"
        assert settings.lock_timeout_seconds == 5.0
        assert not settings.is_production

    def test_nested_settings_read_environment(self, monkeypatch):
        monkeypatch.setenv("EFILING_POLL_ENABLED", "true")
        monkeypatch.setenv("RESILIENCE_CIRCUIT_FAILURE_THRESHOLD", "9")

        settings = Settings()

        assert settings.polling.enabled is True
        assert settings.resilience.circuit_failure_threshold == 9

    def test_get_settings_cached(self):
        assert get_settings() is get_settings()

    def test_non_production_skips_checks(self):
        assert Settings(environment="development").validate_production_config() == []

    def test_production_rejects_sandbox(self):
        errors = Settings(environment="production").validate_production_config()

        assert "EFILING_VERIFY_PROVIDER_MODE: Must be 'live' in production" in errors
        assert "EFILING_AUTHORITY_MODE: Must be 'live' in production" in errors
        assert "EFILING_AUTHORITY_API_KEY: Required in production" in errors
        assert "APP_STORAGE_BACKEND: Must be 'database' in production" in errors

    def test_production_accepts_live_config(self, monkeypatch):
        for key, value in LIVE_ENV.items():
            monkeypatch.setenv(key, value)

        settings = Settings(environment="production", storage_backend="database")

        assert settings.validate_production_config() == []
        assert validate_startup_config(settings, exit_on_failure=False) is True

    def test_plain_http_authority_rejected(self, monkeypatch):
        for key, value in LIVE_ENV.items():
            monkeypatch.setenv(key, value)
        monkeypatch.setenv("EFILING_AUTHORITY_BASE_URL", "http://eri.example.in")

        errors = Settings(environment="staging", storage_backend="database").validate_production_config()

        assert errors == ["EFILING_AUTHORITY_BASE_URL: Must use HTTPS"]

    def test_startup_validation_raises(self):
        with pytest.raises(StartupConfigurationError) as exc_info:
            validate_startup_config(Settings(environment="production"), exit_on_failure=False)
        assert "CRITICAL CONFIGURATION ERROR" in str(exc_info.value)

    def test_startup_validation_exits(self):
        with pytest.raises(SystemExit):
            validate_startup_config(Settings(environment="production"))
