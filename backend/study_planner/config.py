import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SLOT_GRANULARITY_MINUTES = 30
MAX_CLUSTER_SESSIONS = 3
CLUSTER_BREAK_MINUTES = 30


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        populate_by_name=True,
        extra="ignore",
    )

    database_url: Optional[str] = Field(None, alias="STUDY_PLANNER_DATABASE_URL")
    database_pool_size: int = Field(10, alias="STUDY_PLANNER_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="STUDY_PLANNER_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="STUDY_PLANNER_DATABASE_ECHO")
    persistence_mode: Literal["database", "memory"] = Field(
        "database",
        alias="STUDY_PLANNER_PERSISTENCE_MODE",
    )
    session_duration_minutes: int = Field(30, alias="STUDY_PLANNER_SESSION_DURATION_MINUTES")
    buffer_fraction: float = Field(0.2, ge=0.0, lt=1.0, alias="STUDY_PLANNER_BUFFER_FRACTION")
    rebalance_horizon_days: int = Field(14, ge=1, alias="STUDY_PLANNER_REBALANCE_HORIZON_DAYS")
    regen_max_workers: int = Field(4, ge=1, alias="STUDY_PLANNER_REGEN_MAX_WORKERS")
    regen_user_timeout_seconds: float = Field(30.0, gt=0, alias="STUDY_PLANNER_REGEN_USER_TIMEOUT_SECONDS")
    persistence_retry_attempts: int = Field(2, ge=0, alias="STUDY_PLANNER_PERSISTENCE_RETRY_ATTEMPTS")
    history_lookback_days: int = Field(56, ge=7, alias="STUDY_PLANNER_HISTORY_LOOKBACK_DAYS")
    cron_secret: Optional[str] = Field(None, alias="STUDY_PLANNER_CRON_SECRET")

    @field_validator("session_duration_minutes")
    @classmethod
    def _check_duration(cls, value: int) -> int:
        if value <= 0 or value % SLOT_GRANULARITY_MINUTES != 0:
            raise ValueError(
                f"Session duration must be a positive multiple of {SLOT_GRANULARITY_MINUTES} minutes."
            )
        return value


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid planner configuration: {exc}") from exc
