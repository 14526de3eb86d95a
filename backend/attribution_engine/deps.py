"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"
    SENTRY_DSN: Optional[str] = None

    # Redis Configuration (arq scheduled backfills)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Shopify order feed
    SHOPIFY_API_VERSION: str = "2024-07"
    SHOPIFY_TIMEOUT_SECONDS: float = 30.0

    # Backfill bounds
    BACKFILL_MAX_SECONDS: float = 60.0  # wall-clock ceiling per invocation
    BACKFILL_PAGE_SIZE: int = 250
    BACKFILL_MAX_PAGES: int = 20
    BACKFILL_DEFAULT_DAYS: int = 7
    SCHEDULED_BACKFILL_DAYS: int = 1

    # Matching
    TIME_PROXIMITY_WINDOW_MINUTES: int = 120
    TAXONOMY_CACHE_TTL_SECONDS: int = 1800  # 30 minutes

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
