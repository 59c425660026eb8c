"""Application configuration and settings helpers."""
from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Centralized configuration loaded from environment variables."""

    app_name: str = Field(default="Bank Authentication Core")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Stores
    database_url: str = Field(default="sqlite+aiosqlite:///./data/bankauth.db")
    redis_url: str | None = Field(default=None)

    # Reverse proxies whose X-Forwarded-For header is honoured
    trusted_proxies: list[str] = Field(default_factory=list)

    # Tokens
    jwt_secret_key: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")
    jwt_issuer: str = Field(default="bankauth")
    access_token_exp_minutes: int = Field(default=15, le=15)
    refresh_token_exp_minutes: int = Field(default=60 * 24 * 7)
    clock_skew_seconds: int = Field(default=5)

    # Sessions
    session_ttl_minutes: int = Field(default=60 * 24 * 30)
    session_strictness: str = Field(default="standard", pattern="^(lenient|standard|strict)$")
    mfa_reverify_minutes: int = Field(default=30)
    max_concurrent_sessions: int = Field(default=5, ge=1)

    # Passwords and lockout
    bcrypt_rounds: int = Field(default=12, ge=10)
    password_min_length: int = Field(default=12)
    max_failed_login_attempts: int = Field(default=5)
    lockout_base_minutes: int = Field(default=1)
    lockout_max_minutes: int = Field(default=60)
    login_rate_limit_attempts: int = Field(default=20)
    login_rate_limit_window_seconds: int = Field(default=300)

    # One-time tokens and email
    verification_token_exp_minutes: int = Field(default=60 * 24)
    password_reset_token_exp_minutes: int = Field(default=30)
    verification_base_url: str = Field(default="http://localhost:8000/auth/verify-email")
    password_reset_base_url: str = Field(default="http://localhost:8000/auth/reset-password")
    email_from: str = Field(default="no-reply@example.com")
    email_outbox_dir: str | None = Field(default="./data/outbox")
    sms_outbox_dir: str | None = Field(default=None)

    # MFA
    mfa_issuer: str = Field(default="BankAuth")
    mfa_encryption_key: str | None = Field(default=None)
    mfa_max_attempts: int = Field(default=5)
    mfa_window_minutes: int = Field(default=15)
    mfa_ip_max_attempts: int = Field(default=20)
    mfa_pending_exp_minutes: int = Field(default=5)
    sms_code_exp_minutes: int = Field(default=5)
    email_code_exp_minutes: int = Field(default=10)
    otp_max_failed_checks: int = Field(default=3)
    biometric_challenge_exp_minutes: int = Field(default=5)
    backup_codes_count: int = Field(default=10)

    # Risk analysis
    risk_warn_threshold: int = Field(default=40)
    risk_block_threshold: int = Field(default=80)
    velocity_max_requests: int = Field(default=30)
    velocity_window_seconds: int = Field(default=60)
    ip_failure_block_count: int = Field(default=15)
    ip_failure_window_seconds: int = Field(default=3600)

    class Config:
        env_file = ".env"
        env_prefix = "BANKAUTH_"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Return a cached settings instance for the application."""

    return Settings()


def configure_logging(settings: Settings) -> None:
    """Apply the configured log level to the root logger."""

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
