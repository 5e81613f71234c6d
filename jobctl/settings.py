"""
Runtime settings loaded from environment variables (JOBCTL_*) or a .env file.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings."""

    model_config = SettingsConfigDict(
        env_prefix="JOBCTL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    db_path: str = ".jobctl/jobs.db"

    # Worker
    poll_interval_seconds: float = 1.0
    job_timeout_seconds: float = 30.0
    stuck_job_timeout_seconds: float = 300.0

    # Supervisor
    shutdown_grace_seconds: float = 5.0

    # Retry policy
    backoff_multiplier: float = 2
    backoff_cap_seconds: float = 60
    default_max_retries: int = 3

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"  # console or json


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
