"""
Configuration management for the File Ingest service.

Uses pydantic-settings to load configuration from environment variables
and .env files.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Database Configuration
    database_url: str = "sqlite:///ingest.db"
    store_write_retries: int = Field(default=3, ge=1)

    # API Configuration
    api_port: int = 8000
    log_level: str = "INFO"
    api_title: str = "File Ingest API"
    api_version: str = "1.0.0"

    # Watcher Configuration
    watch_path: Path = Path("inbox")
    watch_recursive: bool = False
    initial_scan: bool = True
    debounce_seconds: float = Field(default=0.5, ge=0.0)
    ignore_patterns: str = "*.tmp,*.swp,*.part,.DS_Store"
    intake_retry_seconds: float = Field(default=5.0, gt=0.0)

    # Worker Configuration
    worker_pool_size: int = Field(default=4, ge=1, le=64)
    max_retries: int = Field(default=3, ge=0)
    retry_backoff_base: float = Field(default=1.0, ge=0.0)
    retry_backoff_max: float = Field(default=30.0, ge=0.0)
    processing_unit: str = "domains.file_ingest.processors.units:checksum_file"
    shutdown_grace_seconds: float = Field(default=10.0, ge=0.0)

    # Reconciliation Configuration
    stale_after_seconds: int = Field(default=300, ge=0)
    reconcile_interval_seconds: int = Field(default=60, ge=0)  # 0 disables

    # Trend Configuration
    trend_bucket: Literal["minute", "hour", "day"] = "hour"
    trend_window: int = Field(default=24, ge=1, le=1000)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def get_watch_path(self) -> Path:
        """Resolve the watched directory."""
        return self.watch_path.expanduser().absolute()

    def get_ignore_patterns(self) -> list[str]:
        """Parse ignore patterns into list."""
        return [p.strip() for p in self.ignore_patterns.split(',') if p.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
