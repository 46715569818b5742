from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    db_path: str = "fieldsync.db"

    # Remote service
    api_base_url: str = "http://localhost:8098"
    accept_endpoint: str = "/v1/SPB/api/AcceptSPBByDriver"
    adjust_endpoint: str = "/v1/SPB/api/AdjustSPBByDriver"
    spb_data_endpoint: str = "/v1/SPB/api/GetSPBForDriver"
    api_token: str | None = None
    request_timeout_seconds: float = 30.0

    # Sync policy
    max_retry_attempts: int = 3
    initial_backoff_seconds: float = 5.0
    background_sync_minutes: int = 15
    connectivity_probe_seconds: int = 30

    # Legacy storage migration
    migration_sample_size: int = 10
    migration_verify_threshold: float = 0.8

    # List view
    page_size: int = 10

    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
