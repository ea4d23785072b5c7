from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SETTINGS__",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")

    valkey_host: str = Field(default="localhost")
    valkey_port: int = Field(default=6379)
    state_key_prefix: str = Field(default="sync")
    record_queue: str = Field(default="cdc:records")

    checkpoint_every_records: int = Field(default=1000, ge=1)
    checkpoint_every_seconds: float = Field(default=60.0, gt=0)
    max_transient_retries: int = Field(default=3, ge=0)
    sync_timeout_seconds: Optional[float] = Field(default=None)
    snapshot_concurrency: int = Field(default=1, ge=1)
    defer_initial_snapshot: bool = Field(default=True)
    bounded_runs: bool = Field(default=True)

    prometheus_port: int = Field(default=9001)

    cron_timezone: str = Field(default="UTC")
    sync_interval_minutes: int = Field(default=10, ge=1)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, value: str) -> str:
        return str(value).upper()

    @field_validator("sync_timeout_seconds", mode="before")
    @classmethod
    def empty_timeout(cls, value):
        if value in ("", 0, "0"):
            return None
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
