"""Application settings using Pydantic Settings.

Centralized configuration for the e-filing workflow service.

PRODUCTION: the following must be set explicitly:
- EFILING_VERIFY_PROVIDER_MODE=live and EFILING_VERIFY_IDENTITY_BASE_URL (https)
- EFILING_AUTHORITY_MODE=live and EFILING_AUTHORITY_BASE_URL (https)
- EFILING_AUTHORITY_API_KEY
"""

import logging
import sys
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class RedisSettings(BaseSettings):
    """Redis configuration for the Celery broker."""

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        extra="ignore",
    )

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[str] = Field(default=None, description="Redis password")
    ssl: bool = Field(default=False, description="Use SSL for Redis connection")

    @property
    def base_url(self) -> str:
        auth = f":{self.password}@" if self.password else ""
        protocol = "rediss" if self.ssl else "redis"
        return f"{protocol}://{auth}{self.host}:{self.port}"


class CelerySettings(BaseSettings):
    """Celery task queue configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CELERY_",
        extra="ignore",
    )

    broker_db: int = Field(default=1, description="Redis DB for Celery broker")
    result_db: int = Field(default=2, description="Redis DB for Celery results")

    task_serializer: str = Field(default="json", description="Task serialization format")
    result_serializer: str = Field(default="json", description="Result serialization format")
    accept_content: list = Field(default=["json"], description="Accepted content types")

    task_acks_late: bool = Field(default=True, description="Acknowledge tasks after completion")
    worker_prefetch_multiplier: int = Field(default=1, description="Tasks to prefetch per worker")
    task_time_limit: int = Field(default=300, description="Hard task time limit in seconds")
    task_soft_time_limit: int = Field(default=240, description="Soft task time limit")


class ResilienceSettings(BaseSettings):
    """Retry and circuit breaker configuration for external calls."""

    model_config = SettingsConfigDict(
        env_prefix="RESILIENCE_",
        extra="ignore",
    )

    retry_max_attempts: int = Field(default=3, description="Max attempts for transient errors")
    retry_initial_delay: float = Field(default=1.0, description="Initial delay in seconds")
    retry_backoff_multiplier: float = Field(default=2.0, description="Backoff multiplier")
    retry_max_delay: float = Field(default=30.0, description="Max delay between retries")

    circuit_failure_threshold: int = Field(default=5, description="Failures to open circuit")
    circuit_recovery_timeout: float = Field(default=30.0, description="Seconds before half-open")
    circuit_success_threshold: int = Field(default=2, description="Successes in half-open to close")


class VerificationSettings(BaseSettings):
    """E-verification session limits."""

    model_config = SettingsConfigDict(
        env_prefix="EFILING_VERIFY_",
        extra="ignore",
    )

    otp_ttl_seconds: int = Field(default=300, ge=30, description="OTP/EVC challenge window")
    dsc_ttl_seconds: int = Field(default=900, ge=30, description="Certificate session window")
    redirect_ttl_seconds: int = Field(default=600, ge=30, description="Net banking redirect window")

    max_attempts: int = Field(default=3, ge=1, description="Failed challenges before a session fails")
    max_resends: int = Field(default=3, ge=0, description="OTP resends per session")
    resend_interval_seconds: int = Field(default=60, ge=0, description="Minimum gap between resends")
    duplicate_initiate_window_seconds: int = Field(
        default=30,
        ge=0,
        description="Duplicate initiate calls inside this window return the existing handle"
    )

    provider_mode: str = Field(
        default="sandbox",
        description="sandbox (in-process) or live (HTTP identity provider)"
    )
    identity_base_url: str = Field(
        default="https://eri.sandbox.local/identity",
        description="Identity provider base URL"
    )
    provider_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Per-request timeout for identity provider calls"
    )
    netbanking_return_url: str = Field(
        default="http://localhost:8000/filing/netbanking/callback",
        description="Where the bank redirects back after login"
    )


class AuthoritySettings(BaseSettings):
    """External filing authority endpoint."""

    model_config = SettingsConfigDict(
        env_prefix="EFILING_AUTHORITY_",
        extra="ignore",
    )

    mode: str = Field(default="sandbox", description="sandbox (in-process) or live (HTTP)")
    base_url: str = Field(
        default="https://eri.sandbox.local/filing",
        description="Filing authority base URL"
    )
    api_key: Optional[str] = Field(default=None, description="ERI API key")
    request_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        description="Bounded timeout for submission and status requests"
    )
    stale_claim_seconds: int = Field(
        default=120,
        ge=1,
        description="An in-flight claim older than this is treated as indeterminate"
    )


class PollingSettings(BaseSettings):
    """Background status polling."""

    model_config = SettingsConfigDict(
        env_prefix="EFILING_POLL_",
        extra="ignore",
    )

    enabled: bool = Field(default=False, description="Run the in-process polling loop")
    interval_seconds: float = Field(default=900.0, gt=0, description="Seconds between polls")
    batch_size: int = Field(default=100, ge=1, description="Filings polled per cycle")


class LoggingSettings(BaseSettings):
    """Log output configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        extra="ignore",
    )

    level: str = Field(default="INFO", description="Root log level")
    json_output: bool = Field(default=False, description="Emit JSON log lines")
    file: Optional[str] = Field(default=None, description="Optional log file path")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    name: str = Field(default="E-Filing Workflow", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(default="development", description="Environment name")

    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    lock_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Wait for a filing's lock before failing with FILING_BUSY"
    )
    declarations_path: Optional[str] = Field(
        default=None,
        description="Override path to the declaration catalog YAML"
    )
    storage_backend: str = Field(
        default="memory",
        description="memory (process-local) or database (SQLAlchemy)"
    )

    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8000"],
        description="Allowed CORS origins"
    )

    # Nested settings (loaded separately)
    @property
    def redis(self) -> RedisSettings:
        return RedisSettings()

    @property
    def celery(self) -> CelerySettings:
        return CelerySettings()

    @property
    def resilience(self) -> ResilienceSettings:
        return ResilienceSettings()

    @property
    def verification(self) -> VerificationSettings:
        return VerificationSettings()

    @property
    def authority(self) -> AuthoritySettings:
        return AuthoritySettings()

    @property
    def polling(self) -> PollingSettings:
        return PollingSettings()

    @property
    def log_settings(self) -> LoggingSettings:
        return LoggingSettings()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment in ("production", "prod", "staging")

    def validate_production_config(self) -> List[str]:
        """
        Validate settings that must not reach production with sandbox defaults.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.is_production:
            return errors

        verification = self.verification
        authority = self.authority

        if verification.provider_mode != "live":
            errors.append("EFILING_VERIFY_PROVIDER_MODE: Must be 'live' in production")
        if not verification.identity_base_url.startswith("https://"):
            errors.append("EFILING_VERIFY_IDENTITY_BASE_URL: Must use HTTPS")

        if authority.mode != "live":
            errors.append("EFILING_AUTHORITY_MODE: Must be 'live' in production")
        if not authority.base_url.startswith("https://"):
            errors.append("EFILING_AUTHORITY_BASE_URL: Must use HTTPS")
        if not authority.api_key:
            errors.append("EFILING_AUTHORITY_API_KEY: Required in production")

        if self.storage_backend != "database":
            errors.append("APP_STORAGE_BACKEND: Must be 'database' in production")

        return errors


# =============================================================================
# STARTUP VALIDATION
# =============================================================================

class StartupConfigurationError(Exception):
    """Raised when configuration validation fails at startup."""
    pass


def validate_startup_config(settings: Settings, exit_on_failure: bool = True) -> bool:
    """
    Validate settings at application startup.

    Args:
        settings: Application settings instance
        exit_on_failure: If True, exit the process on failure (default)

    Returns:
        True if validation passes

    Raises:
        StartupConfigurationError: If validation fails and exit_on_failure is False
    """
    errors = settings.validate_production_config()

    if not errors:
        if settings.is_production:
            logger.info("Production configuration validation PASSED")
        return True

    error_msg = (
        "\n" + "=" * 60 + "\n"
        "CRITICAL CONFIGURATION ERROR\n"
        "=" * 60 + "\n\n"
    )
    for i, err in enumerate(errors, 1):
        error_msg += f"  {i}. {err}\n"

    logger.critical(error_msg)

    if exit_on_failure:
        print(error_msg, file=sys.stderr)
        sys.exit(1)
    else:
        raise StartupConfigurationError(error_msg)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings instance.

    Returns:
        Settings: Cached settings loaded from environment.
    """
    return Settings()
