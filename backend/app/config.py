"""Configuration settings for the whtzup backend."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Supabase
    supabase_url: str
    # New key system (preferred)
    supabase_secret_key: str | None = None  # Backend/admin access
    # Legacy key (deprecated)
    supabase_service_role_key: str | None = None

    # App
    debug: bool = False
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8081",
        "http://localhost:19006",
    ]

    # Events listing
    events_default_limit: int = 15000
    events_max_limit: int = 20000

    # Sync
    # Claims older than this are considered abandoned and may be re-claimed
    queue_claim_timeout_seconds: int = 300
    # Side preferred by field-level-merge when both values are present
    merge_preference: Literal["local", "server"] = "local"
    sync_rate_limit: str = "120/minute"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
