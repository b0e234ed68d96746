"""Environment-driven settings for the match core."""
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RALLY_", env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./rally.db"

    # Timer expiry is polled, not pushed.
    timer_poll_interval_sec: float = Field(1.0, gt=0)

    # Snapshots kept for undo per session; the oldest are dropped first.
    undo_history_limit: int = Field(50, ge=1)

    technical_timeout_duration_sec: int = Field(30, ge=1)
    medical_timeout_duration_sec: int = Field(300, ge=1)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
