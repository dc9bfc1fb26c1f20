from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Limiter defaults, read from TOLLGATE_* environment variables or .env.

    Ranges are validated by the limiter itself so that settings and
    keyword arguments fail with the same ConfigurationError.
    """

    requests: int = 100
    window_ms: int = 60_000
    burst: int = 10
    ttl_ms: int | None = None
    redis_url: str | None = None
    key_prefix: str = "tollgate:tb:"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="TOLLGATE_",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
