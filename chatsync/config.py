from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DB: str = "chatsync"

    # Empty means the in-process bus (single worker only)
    REDIS_URL: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    SEND_TIMEOUT_SECONDS: float = 10.0
    SUBSCRIBE_TIMEOUT_SECONDS: float = 5.0
    RECONNECT_BASE_DELAY_SECONDS: float = 0.5
    RECONNECT_MAX_DELAY_SECONDS: float = 30.0
    RECOMPUTE_INTERVAL_SECONDS: float = 60.0
    ENRICHMENT_MAX_ATTEMPTS: int = 3
    DEDUP_WINDOW_SECONDS: float = 5.0
    PRESENCE_TTL_SECONDS: int = 60
    # how long a session started by an HTTP call outlives its last request
    SESSION_IDLE_SECONDS: float = 30.0


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance; call `get_settings.cache_clear()` to reload."""
    return Settings()
