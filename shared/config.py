"""
Shared configuration management for the item cache.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheSettings(BaseSettings):
    """Cache options read from ``ITEM_CACHE_*`` environment variables.

    Durations are in seconds. Range checks are left to the cache
    constructors so a bad value fails the same way whether it came from
    the environment or from code.
    """

    model_config = SettingsConfigDict(
        env_prefix="ITEM_CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    log_level: str = Field(default="info")

    # Push (auto-refreshing) cache
    refresh_period: float = Field(default=300.0)
    load_timeout: Optional[float] = Field(default=None)
    init_retry_delay: float = Field(default=2.0)

    # Pull (on-demand) cache
    caching_period: float = Field(default=300.0)
    initial_retrieval_timeout: Optional[float] = Field(default=None)
    repeat_retrieval_timeout: Optional[float] = Field(default=0.1)

    # Copy isolation: none, deepcopy, pickle or delegated
    clone_strategy: str = Field(default="deepcopy")

    enable_metrics: bool = Field(default=False)


def get_settings(**overrides) -> CacheSettings:
    """Get cache settings, with keyword overrides taking precedence over the environment."""
    return CacheSettings(**overrides)
