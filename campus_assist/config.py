"""
Configuration and settings for the campus assistance backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.constants import (
    DEFAULT_EVENT_TOPIC_MAX_LENGTH,
    DEFAULT_LOCATION_PUSH_INTERVAL_SECONDS,
    DEFAULT_RIDE_POLL_INTERVAL_SECONDS,
)


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Entity store (Postgres expected; any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None)

    # S3-compatible object storage
    storage_endpoint: Optional[str] = Field(default=None)
    storage_region: Optional[str] = Field(default=None)
    storage_bucket: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Managed auth service (GoTrue-compatible REST API)
    auth_url: Optional[str] = Field(default=None)
    auth_api_key: Optional[str] = Field(default=None)
    jwt_secret: str = Field(default="dev-only-insecure-secret")
    jwt_audience: str = Field(default="authenticated")
    access_token_ttl_seconds: int = Field(default=3600)
    auth_hook_secret: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "CAMPUS_ASSIST_USE_IN_MEMORY_BACKENDS", "use_in_memory_backends"
        ),
    )

    # Change events (Redis)
    redis_url: Optional[str] = Field(default=None)
    redis_event_prefix: str = Field(default="campus_assist:events")
    event_topic_max_length: int = Field(default=DEFAULT_EVENT_TOPIC_MAX_LENGTH)

    # Verification codes
    verification_code_ttl_seconds: int = Field(default=600)

    # Polling cadence handed to clients and the dispatch monitor
    ride_poll_interval_seconds: float = Field(
        default=DEFAULT_RIDE_POLL_INTERVAL_SECONDS
    )
    location_push_interval_seconds: float = Field(
        default=DEFAULT_LOCATION_PUSH_INTERVAL_SECONDS
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
