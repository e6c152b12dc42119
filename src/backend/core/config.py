"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables (or a local .env file).
Every abuse-prevention threshold is a setting so operators can respond to
observed abuse patterns without a deploy.
"""

from functools import lru_cache
from typing import Any

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "VibeGuard"
    APP_ENV: str = "development"
    DEBUG: bool = False
    SECRET_KEY: str = ""  # Required - loaded from environment

    @field_validator("SECRET_KEY")
    @classmethod
    def validate_required_secrets(cls, v: str, info: Any) -> str:
        """Validate that required secrets are set."""
        if not v:
            raise ValueError(f"{info.field_name} must be set in environment")
        return v

    # Storage
    # Postgres URL for the anonymous likes table; in-memory store when unset
    DATABASE_URL: str | None = None
    DATABASE_ECHO: bool = False
    # Shared counter store; in-memory (single node only) when unset
    REDIS_URL: str | None = None
    STORAGE_TIMEOUT_SECONDS: float = 5.0

    # Authentication (identity is issued elsewhere, we only verify)
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str | None = None
    JWT_AUDIENCE: str | None = None

    # CORS - stored as comma-separated string to avoid pydantic-settings JSON parsing issues
    CORS_ORIGINS: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        import json

        try:
            return json.loads(self.CORS_ORIGINS)
        except json.JSONDecodeError:
            return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() == "production"

    # Hashing salts (fall back to SECRET_KEY)
    IP_HASH_SALT: str | None = None
    FINGERPRINT_SALT: str | None = None

    # Rate limiting (fixed window)
    IP_RATE_LIMIT_MAX: int = 30
    IP_RATE_LIMIT_WINDOW_MS: int = 5 * 60_000
    SESSION_RATE_LIMIT_MAX: int = 10
    SESSION_RATE_LIMIT_WINDOW_MS: int = 60_000

    # Fingerprint reuse
    FINGERPRINT_MAX_SESSIONS: int = 3
    FINGERPRINT_WINDOW_MINUTES: int = 10

    # Behavioral analysis
    BEHAVIOR_BOT_THRESHOLD: int = 50
    # Most recent actions analysed per vote (requests carry at most 50)
    ACTION_LOG_MAX_EVENTS: int = 50
    BEHAVIOR_HISTORY_MAX_ENTRIES: int = 100
    BEHAVIOR_HISTORY_TTL_SECONDS: int = 7 * 24 * 3600

    # Proof of work
    POW_DIFFICULTY: int = 4
    POW_DIFFICULTY_HIGH: int = 5
    POW_HIGH_CONFIDENCE: int = 80
    POW_CHALLENGE_TTL_MS: int = 5 * 60_000

    # Time challenge
    TIME_CHALLENGE_SECRET: str | None = None
    TIME_CHALLENGE_TTL_MS: int = 30_000
    TIME_CHALLENGE_MIN_DWELL_MS: int = 2_000

    # CAPTCHA (hCaptcha-compatible siteverify endpoint)
    CAPTCHA_SECRET: str | None = None
    CAPTCHA_VERIFY_URL: str = "https://hcaptcha.com/siteverify"
    CAPTCHA_TIMEOUT_SECONDS: float = 5.0
    # Only honoured outside production; see validate_captcha_fail_open
    CAPTCHA_FAIL_OPEN: bool = False

    # Voting anomaly detection
    ANOMALY_WINDOW_MINUTES: int = 5
    ANOMALY_BURST_THRESHOLD: int = 50
    ANOMALY_MIN_UNIQUE_IPS: int = 10
    ANOMALY_SAMPLE_LIMIT: int = 100

    # Reputation scoring (optional stage 5 hook)
    REPUTATION_ENABLED: bool = False
    REPUTATION_CAPTCHA_THRESHOLD: int = 40

    @model_validator(mode="after")
    def validate_captcha_fail_open(self) -> "Settings":
        """Refuse to fail open on CAPTCHA in production."""
        if self.CAPTCHA_FAIL_OPEN and self.is_production:
            raise ValueError("CAPTCHA_FAIL_OPEN cannot be enabled when APP_ENV is production")
        return self

    @property
    def ip_hash_salt(self) -> str:
        return self.IP_HASH_SALT or self.SECRET_KEY

    @property
    def fingerprint_salt(self) -> str:
        return self.FINGERPRINT_SALT or self.SECRET_KEY

    @property
    def time_challenge_secret(self) -> str:
        return self.TIME_CHALLENGE_SECRET or self.SECRET_KEY


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
