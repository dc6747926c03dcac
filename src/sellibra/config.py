"""Configuration module using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "sqlite:///data/sellibra.db"
    database_echo: bool = False

    # Token quota
    default_daily_tokens: int = 40
    token_reset_hours: float = 24

    # Job queue transport
    queue_backend: str = "redis"  # "redis", "memory" or "disabled"
    redis_url: str | None = None  # e.g. redis://localhost:6379/0
    redis_prefix: str = "sellibra:"  # Key prefix for namespacing

    # Job defaults (per-queue values can be overridden below)
    job_max_attempts: int = 3
    job_backoff_seconds: float = 2.0
    queue_overrides: dict[str, dict[str, Any]] = {}

    # Job retention
    completed_job_retention_seconds: int = 24 * 3600
    completed_job_retention_count: int = 1000
    failed_job_retention_seconds: int = 7 * 24 * 3600

    # Workers
    lease_grace_seconds: float = 30.0
    worker_poll_interval: float = 0.5
    bridge_wait_factor: float = 1.5  # Outer wait = job timeout * factor

    # AI operations, as "module:attribute" (unset uses the development stub)
    ai_operations: str | None = None

    # Temporary uploads
    temp_dir: Path = Path("data/uploads/temp")
    temp_file_max_age_minutes: int = 60
    max_upload_mb: int = 10
    maintenance_interval_minutes: int = 60

    # Logging
    log_level: str = "INFO"

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @property
    def data_dir(self) -> Path:
        """Get the data directory path."""
        # Extract path from SQLite URL
        if self.database_url.startswith("sqlite:///"):
            db_path = Path(self.database_url.replace("sqlite:///", ""))
            return db_path.parent
        return Path("data")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
