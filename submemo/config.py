"""
Configuration and settings for the SubMemo backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service and daemons."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Database (Postgres expected, any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "SUBMEMO_USE_IN_MEMORY_BACKENDS", "use_in_memory_backends"
        ),
    )

    # Realtime change channel (Redis pub/sub)
    redis_url: Optional[str] = Field(default=None)
    redis_channel_prefix: str = Field(default="submemo:changes")

    # Calendar & scheduling
    app_timezone: str = Field(default="Asia/Tokyo")
    notification_hour: int = Field(default=21, ge=0, le=23)
    lifecycle_interval_seconds: int = Field(default=24 * 60 * 60, ge=1)
    lifecycle_catch_up: bool = Field(default=False)

    # Transactional email (Resend)
    resend_api_key: Optional[str] = Field(default=None)
    resend_api_url: str = Field(default="https://api.resend.com/emails")
    from_email: str = Field(default="SubMemo <notifications@yourdomain.com>")

    # Shared secret the cron caller sends as a Bearer token; unset disables the hooks.
    cron_secret: Optional[str] = Field(default=None)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
