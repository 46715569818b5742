"""Legacy storage migration endpoints."""

import logging
from fastapi import APIRouter, Depends, HTTPException

from fieldsync.api.deps import get_migration_service
from fieldsync.core.errors import MigrationError
from fieldsync.schemas.responses import ClearResponse, MigrationRunResponse, MigrationStatusResponse
from fieldsync.services.migration import GenerationMigrationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/migration", tags=["migration"])


@router.post("/run", response_model=MigrationRunResponse)
async def run_migration(service: GenerationMigrationService = Depends(get_migration_service)):
    """Copy legacy forms into the form_records table."""
    success = await service.migrate()
    return MigrationRunResponse(
        success=success,
        status=service.status.value,
        progress=service.progress.value,
        total_items=service.total_items.value,
        error_message=service.error_message.value,
    )


@router.post("/cleanup", response_model=ClearResponse)
async def cleanup_migration(service: GenerationMigrationService = Depends(get_migration_service)):
    """Delete legacy keys. Only allowed after a verified migration."""
    try:
        removed = await service.cleanup()
    except MigrationError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return ClearResponse(removed=removed)


@router.get("/status", response_model=MigrationStatusResponse)
async def migration_status(service: GenerationMigrationService = Depends(get_migration_service)):
    return MigrationStatusResponse(
        status=service.status.value,
        needs_migration=await service.needs_migration(),
        migration_done=await service.is_migration_done(),
        stats=await service.get_migration_stats(),
    )
