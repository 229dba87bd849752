"""
Configuration management for the platform sync engine
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Platform Sync Engine"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./platform_sync.db"

    # Vendor API versions
    shopify_api_version: str = "2026-01"
    meta_api_version: str = "v21.0"

    # Quick sync
    quick_sync_days: int = 3  # Recent window fetched synchronously
    quick_sync_timeout_seconds: float = 25.0
    pagination_max_pages: int = 10  # Circuit breaker for pathological cursors

    # Outbound fetch retries (linear, capped)
    fetch_max_attempts: int = 3
    fetch_base_delay_seconds: float = 2.0
    fetch_max_delay_seconds: float = 10.0
    fetch_timeout_seconds: float = 30.0
    max_in_flight_per_credential: int = 4

    # Writes
    write_batch_size: int = 100

    # Bulk export polling (cadence, not error recovery)
    bulk_poll_initial_seconds: float = 15.0
    bulk_poll_step_seconds: float = 15.0
    bulk_poll_max_seconds: float = 120.0
    bulk_poll_max_attempts: int = 720
    bulk_result_max_pages: int = 500
    meta_insights_lookback_days: int = 1095

    # Scheduler
    enable_scheduler: bool = True
    resume_bulk_imports_minutes: int = 10
    refresh_connections_hours: int = 24
    refresh_window_days: int = 7  # Trailing window re-synced for completed connections

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
