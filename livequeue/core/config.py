"""Queue configuration read from the environment (LIVEQUEUE_*) and an optional .env file."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class QueueSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LIVEQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Capacity / admission
    # -------------------------------------------------------------------------
    max_size: int = Field(default=1000, ge=1)
    max_attempts: int = Field(default=3, ge=1, le=20)
    gift_event_types: list[str] = Field(default_factory=lambda: ["gift", "donation"])
    gift_eviction_fraction: float = Field(default=0.1, gt=0, le=1)
    gift_reservation_threshold: int = 100
    min_admission_priority: int = 50

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------
    base_retry_delay: float = Field(default=5.0, ge=0)
    max_retry_delay: float = Field(default=300.0, ge=0)
    idle_timeout: float = Field(default=5.0, gt=0)
    handler_timeout: float = Field(default=30.0, gt=0)
    shutdown_timeout: float = Field(default=30.0, ge=0)
    shutdown_grace_seconds: float = Field(default=60.0, ge=0)
    store_retry_delay: float = Field(default=1.0, ge=0)
    max_consecutive_store_failures: int | None = None

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------
    stuck_job_timeout_minutes: float = 10
    completed_retention_hours: float = 24
    failed_retention_hours: float = 168
    log_retention_days: float = 30
    maintenance_interval: float = Field(default=1800.0, gt=0)
    health_window_hours: float = 1

    # -------------------------------------------------------------------------
    # Storage / logging
    # -------------------------------------------------------------------------
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "livequeue"
    max_log_entries: int = Field(default=10_000, ge=1)
    log_level: str = "INFO"

    @field_validator("gift_event_types")
    @classmethod
    def validate_gift_event_types(cls, v: list[str]) -> list[str]:
        return [item.strip() for item in v if item.strip()]


def load_settings() -> QueueSettings:
    return QueueSettings()
