from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Forum service settings loaded from environment variables.
    Environment variables take precedence over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Message Store - required from .env
    DATABASE_URL: str

    # Reply Index - required from .env
    REDIS_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Reply index keys are "<prefix>:<root message id>"
    REPLY_INDEX_PREFIX: str = "message-replies"

    MAX_MESSAGE_LENGTH: int = 256
    ANCESTOR_MAX_DEPTH: int = 50
    DEFAULT_REPLY_PREVIEW_LIMIT: int = 10
    PREVIEW_FANOUT_WORKERS: int = 8

    # Resync is the only path that retries store failures
    RESYNC_MAX_RETRIES: int = 3
    RESYNC_RETRY_BASE_DELAY: float = 0.2

    RECENT_MESSAGES_WINDOW_HOURS: int = 6


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


settings = get_settings()
