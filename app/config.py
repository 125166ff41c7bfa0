"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Database - Supabase
    SUPABASE_DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT verification for end-user session tokens (issued by the auth provider)
    JWT_SECRET: str = Field(default="change-this-secret-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")

    # RevenueCat
    REVENUECAT_API_KEY: str = Field(default="")
    REVENUECAT_WEBHOOK_SECRET: str = Field(default="")
    REVENUECAT_WEBHOOK_LEGACY_AUTH: bool = Field(
        default=True,
        description=(
            "Also accept the webhook secret from the ?secret= query parameter "
            "and the X-Provider-Signature header"
        ),
    )
    REVENUECAT_TIMEOUT_SECONDS: float = Field(default=10.0)

    # Scheduled jobs / bulk sync callers
    CRON_SECRET: str = Field(default="")

    # Reconciliation
    DEFAULT_TRIAL_DAYS: int = Field(default=3, ge=1)
    SYNC_ALL_LIMIT: int = Field(default=100, ge=1)

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="*")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.SUPABASE_DATABASE_URL:
            return self.SUPABASE_DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
