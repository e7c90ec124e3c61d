"""Application configuration using Pydantic Settings."""

import os
import secrets
import warnings
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from storymeter.exceptions import DefaultSecretKeyError, ShortSecretKeyError

# Minimum length for JWT secret key in production
MIN_JWT_SECRET_LENGTH = 32

# Generate a random secret for development if not explicitly set
_ENV_JWT_SECRET = os.environ.get("JWT_SECRET_KEY")
if _ENV_JWT_SECRET:
    _DEV_JWT_SECRET = _ENV_JWT_SECRET
else:
    _DEV_JWT_SECRET = secrets.token_urlsafe(48)
    if os.environ.get("ENVIRONMENT", "development") != "test":
        warnings.warn(
            "JWT_SECRET_KEY not set - using auto-generated secret. "
            "Tokens issued by the identity provider will not validate. "
            "Set JWT_SECRET_KEY in environment.",
            stacklevel=2,
        )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Application
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    PORT: int = 3001
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool | None = None  # None = JSON everywhere except development

    # Database
    # NOTE: In production, DATABASE_URL must be set via environment variable
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/storymeter"

    # Database connection pool settings (ignored for SQLite)
    DB_POOL_SIZE: int = 10
    DB_POOL_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Auth
    JWT_SECRET_KEY: str = _DEV_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"

    # Emails that always resolve to the admin tier
    ADMIN_EMAILS_RAW: str = Field(default="", validation_alias="ADMIN_EMAILS")

    @property
    def ADMIN_EMAILS(self) -> list[str]:  # noqa: N802 - matches env var name
        """Parse admin emails from a comma-separated string."""
        if not self.ADMIN_EMAILS_RAW:
            return []
        return [e.strip().lower() for e in self.ADMIN_EMAILS_RAW.split(",") if e.strip()]

    @field_validator("JWT_SECRET_KEY")
    @classmethod
    def validate_jwt_secret(cls, v: str, _info: object) -> str:
        """Validate JWT secret meets security requirements in production."""
        env = os.environ.get("ENVIRONMENT", "development")
        if env == "production":
            if not os.environ.get("JWT_SECRET_KEY"):
                raise DefaultSecretKeyError
            if len(v) < MIN_JWT_SECRET_LENGTH:
                raise ShortSecretKeyError
        return v

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    REDIS_URL: str | None = None
    TRUST_PROXY: bool = False  # Only trust X-Forwarded-For behind a known proxy
    CHAT_RATE_LIMIT_BACKEND: str = "memory"  # "memory" or "redis"
    CHAT_RATE_LIMIT_REQUESTS: int = 20
    CHAT_RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Metering
    GENERATION_TOKEN_ESTIMATE: int = 500  # Tokens reserved before a generate call
    STORYBOARD_IMAGE_COST_USD: float = 0.02
    USAGE_RESET_TASK_ENABLED: bool = False  # Lazy reset in check_and_reserve covers active users
    USAGE_RESET_INTERVAL_SECONDS: int = 3600

    # AI providers
    AI_PROVIDER: str = "gemini"  # "gemini" or "openai"
    GEMINI_API_KEY: str | None = None
    GEMINI_MODEL: str = "gemini-2.0-flash"
    GEMINI_API_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-3.5-turbo"
    OPENAI_API_URL: str = "https://api.openai.com/v1"
    PROVIDER_MAX_RETRIES: int = 3
    PROVIDER_RETRY_INITIAL_DELAY: float = 1.0  # Seconds, doubled on each retry
    HTTP_TIMEOUT_DEFAULT: float = 60.0

    # Payments
    PAYMENT_WEBHOOK_SECRET: str | None = None

    # Error reporting
    SENTRY_DSN: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float | None = None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
