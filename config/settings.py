"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine-wide defaults loaded from environment variables."""

    # Freshness: seconds a fetched value is served without refetching (0 = always refetch)
    default_stale_time: float = 0.0

    # Eviction grace period after the last subscriber leaves
    default_cache_time: float = 300.0

    # Polling (None = no polling)
    default_refetch_interval: Optional[float] = None

    # Environment triggers
    default_refetch_on_focus: bool = False
    default_refetch_on_reconnect: bool = True

    # Retry policy for failed fetches
    default_retry: int = 3
    default_retry_delay: float = 1.0

    # Share one in-flight fetch between concurrent requests for a key
    default_dedupe: bool = True

    # Logging
    log_level: str = "INFO"

    class Config:
        env_prefix = "SWRCACHE_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
