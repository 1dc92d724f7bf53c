from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str | None = None
    worker_id: str | None = None
    worker_concurrency: int = 5
    poll_interval_seconds: float = 1.0
    shutdown_timeout_seconds: float = 30.0
    stale_cleanup_interval_seconds: float = 300.0
    scheduler_interval_seconds: float = 30.0
    completed_retention_hours: int = 168
    prefer_skip_locked: bool = True
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="JOBPLATFORM_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
