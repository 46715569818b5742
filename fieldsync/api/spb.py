"""SPB list endpoints."""

import logging
from fastapi import APIRouter, Depends, HTTPException

from fieldsync.api.deps import get_engine, get_spb_controller, get_spb_repository
from fieldsync.core.errors import CacheError
from fieldsync.schemas.responses import ClearResponse, SpbListResponse
from fieldsync.services.controller import SORT_COLUMNS, SpbListController
from fieldsync.services.spb_repository import SpbRepository
from fieldsync.services.sync import FormSyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/spb", tags=["spb"])


@router.get("", response_model=SpbListResponse)
async def list_spb(
    driver: str,
    kd_vendor: str,
    refresh: bool = False,
    page: int = 1,
    page_size: int | None = None,
    sort: str | None = None,
    ascending: bool | None = None,
    q: str | None = None,
    repository: SpbRepository = Depends(get_spb_repository),
    engine: FormSyncEngine = Depends(get_engine),
    watcher: SpbListController = Depends(get_spb_controller),
):
    """
    One page of the driver's SPB list, sorted and filtered.

    The view is built per request. The app-wide controller is pointed at
    this driver so a reconnect refreshes their cached list.
    """
    if sort is not None and sort not in SORT_COLUMNS:
        raise HTTPException(status_code=400, detail=f"sort must be one of {', '.join(SORT_COLUMNS)}")
    if page_size is not None and page_size < 1:
        raise HTTPException(status_code=400, detail="page_size must be positive")

    controller = SpbListController(repository, engine, engine.monitor)
    await controller.load(driver, kd_vendor)
    watcher.watch(driver, kd_vendor)
    if refresh:
        await controller.refresh()

    if sort is not None:
        controller.sort(sort, ascending)
    if q:
        controller.search(q)
    if page_size is not None:
        controller.change_page_size(page_size, page)
    else:
        controller.change_page(page)

    state = controller.state.value
    return SpbListResponse(
        state=state.kind.value,
        items=state.items,
        total_items=state.total_items,
        current_page=state.current_page,
        total_pages=state.total_pages,
        page_size=state.page_size,
        is_connected=state.is_connected,
        sort_column=state.sort_column,
        sort_ascending=state.sort_ascending,
        search_query=state.search_query,
        message=state.message,
    )


@router.delete("", response_model=ClearResponse)
async def clear_spb_cache(repository: SpbRepository = Depends(get_spb_repository)):
    try:
        removed = await repository.clear_all()
    except CacheError as e:
        raise HTTPException(status_code=500, detail=e.message)
    logger.info(f"Cleared {removed} cached SPB entries")
    return ClearResponse(removed=removed)
