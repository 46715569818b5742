"""Form save and sync endpoints."""

import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.api.deps import get_engine
from fieldsync.core.database import get_db
from fieldsync.core.errors import CacheError, ValidationError
from fieldsync.models.sync_log import SyncLog
from fieldsync.schemas.forms import FormPayload, FormRecord, SyncState, SyncStats
from fieldsync.schemas.responses import (
    ClearResponse,
    EngineStatusResponse,
    FormResponse,
    FormSaveRequest,
    FormSyncResponse,
    SaveResponse,
    SyncAllResponse,
    SyncPassResponse,
)
from fieldsync.services.sync import FormSyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/forms", tags=["forms"])


def _to_response(record: FormRecord, max_retry_attempts: int) -> FormResponse:
    return FormResponse(
        **record.model_dump(),
        sync_state=record.sync_state(max_retry_attempts),
    )


@router.post("", response_model=SaveResponse, status_code=201)
async def save_form(request: FormSaveRequest, engine: FormSyncEngine = Depends(get_engine)):
    """Save a form locally; it is synced in the background when online."""
    payload = FormPayload(
        status=request.status,
        created_by=request.created_by,
        latitude=request.latitude,
        longitude=request.longitude,
        timestamp=request.timestamp,
    )
    try:
        engine.validate_form(request.record_key, payload, request.resource_changed, request.reason)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.message)

    saved = await engine.save_form(request.record_key, payload, request.resource_changed, request.reason)
    if not saved:
        raise HTTPException(status_code=500, detail="Failed to save form locally")
    return SaveResponse(record_key=request.record_key, saved=True)


@router.get("", response_model=list[FormResponse])
async def list_forms(state: SyncState | None = None, engine: FormSyncEngine = Depends(get_engine)):
    """List stored forms, optionally filtered by sync state."""
    try:
        records = await engine.store.list_all()
    except CacheError as e:
        raise HTTPException(status_code=500, detail=e.message)

    responses = [_to_response(r, engine.max_retry_attempts) for r in records]
    if state is not None:
        responses = [r for r in responses if r.sync_state == state]
    return responses


@router.get("/stats", response_model=SyncStats)
async def sync_stats(engine: FormSyncEngine = Depends(get_engine)):
    try:
        return await engine.get_sync_stats()
    except CacheError as e:
        raise HTTPException(status_code=500, detail=e.message)


@router.get("/status", response_model=EngineStatusResponse)
async def engine_status(
    engine: FormSyncEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
):
    """Current engine status and the last logged sync pass."""
    result = await db.execute(
        select(SyncLog)
        .order_by(desc(SyncLog.started_at), desc(SyncLog.id))
        .limit(1)
    )
    last_log = result.scalar_one_or_none()

    return EngineStatusResponse(
        status=engine.status.value,
        error_message=engine.error_message.value,
        last_sync_time=engine.last_sync_time.value,
        is_online=engine.is_online,
        last_pass=SyncPassResponse.model_validate(last_log) if last_log else None,
    )


@router.post("/sync", response_model=SyncAllResponse)
async def sync_all(engine: FormSyncEngine = Depends(get_engine)):
    """Sync every pending form now."""
    success = await engine.force_sync_now()
    return SyncAllResponse(success=success, stats=await engine.get_sync_stats())


@router.post("/retry", response_model=SyncAllResponse)
async def retry_failed(record_key: str | None = None, engine: FormSyncEngine = Depends(get_engine)):
    """Reset the retry budget of failed forms and sync them."""
    success = await engine.retry_failed(record_key)
    return SyncAllResponse(success=success, stats=await engine.get_sync_stats())


@router.delete("", response_model=ClearResponse)
async def clear_forms(engine: FormSyncEngine = Depends(get_engine)):
    removed = await engine.clear_all_sync_data()
    logger.info(f"Cleared all form sync data ({removed} forms)")
    return ClearResponse(removed=removed)


@router.get("/{record_key}", response_model=FormResponse)
async def get_form(record_key: str, engine: FormSyncEngine = Depends(get_engine)):
    record = await engine.get_form(record_key)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Form {record_key} not found")
    return _to_response(record, engine.max_retry_attempts)


@router.post("/{record_key}/sync", response_model=FormSyncResponse)
async def sync_form(record_key: str, engine: FormSyncEngine = Depends(get_engine)):
    if await engine.get_form(record_key) is None:
        raise HTTPException(status_code=404, detail=f"Form {record_key} not found")
    synced = await engine.sync_form(record_key)
    return FormSyncResponse(record_key=record_key, synced=synced)
