from fastapi import APIRouter, Depends
from pydantic import BaseModel

from fieldsync.core.config import Settings, get_settings

router = APIRouter(prefix="/api", tags=["config"])


class HealthResponse(BaseModel):
    status: str
    version: str


class ConfigResponse(BaseModel):
    db_path: str
    api_base_url: str
    accept_endpoint: str
    adjust_endpoint: str
    spb_data_endpoint: str
    request_timeout_seconds: float
    max_retry_attempts: int
    initial_backoff_seconds: float
    background_sync_minutes: int
    connectivity_probe_seconds: int
    migration_verify_threshold: float
    page_size: int
    debug: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version="0.1.0")


@router.get("/config", response_model=ConfigResponse)
async def get_config(settings: Settings = Depends(get_settings)) -> ConfigResponse:
    """Get current configuration (excluding secrets)."""
    return ConfigResponse(
        db_path=settings.db_path,
        api_base_url=settings.api_base_url,
        accept_endpoint=settings.accept_endpoint,
        adjust_endpoint=settings.adjust_endpoint,
        spb_data_endpoint=settings.spb_data_endpoint,
        request_timeout_seconds=settings.request_timeout_seconds,
        max_retry_attempts=settings.max_retry_attempts,
        initial_backoff_seconds=settings.initial_backoff_seconds,
        background_sync_minutes=settings.background_sync_minutes,
        connectivity_probe_seconds=settings.connectivity_probe_seconds,
        migration_verify_threshold=settings.migration_verify_threshold,
        page_size=settings.page_size,
        debug=settings.debug,
    )
