"""
Configuration management for Content Desk.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings, read from the environment and ``.env``."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Application
    app_name: str = Field(default="Content Desk")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_workers: int = Field(default=1)

    # Database
    database_url: str = Field(default="sqlite:///./content_desk.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")

    # Editorial workflow
    reject_reason_min_length: int = Field(default=20, ge=1)

    # Scheduler
    schedule_max_attempts: int = Field(default=3, ge=1)
    schedule_overdue_grace_seconds: int = Field(default=900, ge=0)
    schedule_processing_lease_seconds: int = Field(default=600, ge=1)
    sweep_batch_size: int = Field(default=100, ge=1)

    # Worker
    worker_poll_interval: int = Field(default=60, ge=1)

    # Fan-out queue
    fanout_max_attempts: int = Field(default=5, ge=1)
    fanout_backoff_base_seconds: int = Field(default=30, ge=1)
    fanout_processing_lease_seconds: int = Field(default=600, ge=1)

    # Delivery
    delivery_max_attempts: int = Field(default=5, ge=1)
    delivery_backoff_base_seconds: int = Field(default=30, ge=1)
    delivery_webhook_url: Optional[str] = Field(default=None)
    delivery_timeout_seconds: float = Field(default=10.0, gt=0)

    # Notification preference defaults
    default_quiet_hours_start: Optional[str] = Field(default="22:00")
    default_quiet_hours_end: Optional[str] = Field(default="08:00")
    default_timezone: str = Field(default="UTC")

    # Audit retention
    audit_retention_days: int = Field(default=365, ge=1)


@lru_cache
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
