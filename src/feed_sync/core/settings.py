"""Client settings and configuration.

This module defines all configuration options for the feed-sync client layer.
Settings are loaded from environment variables with sensible defaults.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Hosted backend
    backend_url: str = Field(default="http://localhost:54321", alias="BACKEND_URL")
    backend_api_key: str | None = Field(default=None, alias="BACKEND_API_KEY")
    backend_access_token: str | None = Field(default=None, alias="BACKEND_ACCESS_TOKEN")
    backend_timeout_seconds: float = Field(default=10.0, alias="BACKEND_TIMEOUT_SECONDS")

    # Feed pagination
    feed_page_size: int = Field(default=10, ge=1, alias="FEED_PAGE_SIZE")
    hot_page_size: int = Field(default=100, ge=1, alias="HOT_PAGE_SIZE")
    feed_window_days: int = Field(default=7, ge=1, alias="FEED_WINDOW_DAYS")
    chat_page_size: int = Field(default=20, ge=1, alias="CHAT_PAGE_SIZE")
    chat_list_size: int = Field(default=100, ge=1, alias="CHAT_LIST_SIZE")

    # Cache freshness and retention
    feed_stale_seconds: float = Field(default=120.0, alias="FEED_STALE_SECONDS")
    blocks_stale_seconds: float = Field(default=300.0, alias="BLOCKS_STALE_SECONDS")
    cache_retention_seconds: float = Field(default=1800.0, alias="CACHE_RETENTION_SECONDS")
    cache_eviction_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        alias="CACHE_EVICTION_INTERVAL_SECONDS",
    )

    # Realtime change notifications
    realtime_debounce_ms: int = Field(default=300, ge=0, alias="REALTIME_DEBOUNCE_MS")
    realtime_poll_interval_seconds: float = Field(
        default=2.0,
        alias="REALTIME_POLL_INTERVAL_SECONDS",
    )

    # Moderation views
    blocklist_fail_mode: Literal["open", "closed"] = Field(
        default="open",
        alias="BLOCKLIST_FAIL_MODE",
    )
    comment_max_depth: int = Field(default=32, ge=1, alias="COMMENT_MAX_DEPTH")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def realtime_debounce_seconds(self) -> float:
        """Return the realtime debounce window in seconds."""
        return self.realtime_debounce_ms / 1000.0


settings = Settings()
