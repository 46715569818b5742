"""Pydantic request/response models for API endpoints."""

from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from fieldsync.schemas.forms import (
    FormStatus,
    MigrationStats,
    MigrationStatus,
    SpbItem,
    SyncPhase,
    SyncState,
    SyncStats,
)


class FormSaveRequest(BaseModel):
    """Form submitted by the driver app."""
    model_config = ConfigDict(populate_by_name=True)

    record_key: str = Field(alias="noSPB")
    status: FormStatus = FormStatus.ISSUE
    created_by: str | None = Field(default=None, alias="createdBy")
    latitude: str | None = None
    longitude: str | None = None
    timestamp: int | None = None
    resource_changed: bool | None = Field(default=None, alias="isAnyHandlingEx")
    reason: str | None = Field(default=None, alias="alasan")


class FormResponse(BaseModel):
    """Stored form with its sync metadata."""
    record_key: str
    status: FormStatus
    created_by: str
    latitude: str
    longitude: str
    reason: str | None
    resource_changed: bool
    timestamp: int
    is_synced: bool
    retry_count: int
    last_error: str | None
    last_sync_attempt: int | None
    created_at: int
    updated_at: int
    sync_state: SyncState


class SaveResponse(BaseModel):
    record_key: str
    saved: bool


class FormSyncResponse(BaseModel):
    record_key: str
    synced: bool


class SyncAllResponse(BaseModel):
    success: bool
    stats: SyncStats


class ClearResponse(BaseModel):
    removed: int


class SyncPassResponse(BaseModel):
    """Most recent logged sync pass."""
    sync_type: str
    started_at: datetime
    completed_at: datetime | None
    status: str
    details: dict | None
    error_message: str | None

    model_config = ConfigDict(from_attributes=True)


class EngineStatusResponse(BaseModel):
    status: SyncPhase
    error_message: str | None
    last_sync_time: datetime | None
    is_online: bool
    last_pass: SyncPassResponse | None


class MigrationRunResponse(BaseModel):
    success: bool
    status: MigrationStatus
    progress: int
    total_items: int
    error_message: str | None


class MigrationStatusResponse(BaseModel):
    status: MigrationStatus
    needs_migration: bool
    migration_done: bool
    stats: MigrationStats


class SpbListResponse(BaseModel):
    """One page of the SPB list view."""
    state: str
    items: list[SpbItem]
    total_items: int
    current_page: int
    total_pages: int
    page_size: int
    is_connected: bool
    sort_column: str
    sort_ascending: bool
    search_query: str
    message: str | None
