"""View-state controller for the driver's SPB list."""

import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from fieldsync.core.config import Settings, get_settings
from fieldsync.core.errors import CacheError, SyncError
from fieldsync.core.observable import ObservableValue
from fieldsync.schemas.forms import SpbItem
from fieldsync.services.connectivity import ConnectivityMonitor, ConnectivityResult, is_connected
from fieldsync.services.spb_repository import SpbRepository
from fieldsync.services.sync import FormSyncEngine

logger = logging.getLogger(__name__)

SORT_COLUMNS = ("no_spb", "tgl_antar_buah", "mill_tujuan", "status")
SEARCH_FIELDS = ("no_spb", "mill_tujuan", "status", "tgl_antar_buah", "kode_vendor", "driver", "no_polisi")


class ListStateKind(str, Enum):
    INITIAL = "initial"
    LOADING = "loading"
    LOADED = "loaded"
    REFRESHING = "refreshing"
    SYNCING = "syncing"
    SYNC_FAILURE = "sync_failure"
    LOAD_FAILURE = "load_failure"


# States that carry a usable list
VIEW_KINDS = (ListStateKind.LOADED, ListStateKind.SYNC_FAILURE)


@dataclass(frozen=True)
class ListState:
    kind: ListStateKind = ListStateKind.INITIAL
    items: list[SpbItem] = field(default_factory=list)
    total_items: int = 0
    current_page: int = 1
    total_pages: int = 0
    page_size: int = 10
    is_connected: bool = False
    sort_column: str = "tgl_antar_buah"
    sort_ascending: bool = False
    search_query: str = ""
    message: Optional[str] = None


class SpbListController:
    """
    Holds sort, filter and pagination state over the SPB list and reacts
    to connectivity changes.

    Form submission is delegated to the sync engine.
    """

    def __init__(
        self,
        repository: SpbRepository,
        engine: FormSyncEngine,
        monitor: ConnectivityMonitor,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.repository = repository
        self.engine = engine
        self.monitor = monitor

        self._all: list[SpbItem] = []
        self._sort_column = "tgl_antar_buah"
        self._sort_ascending = False
        self._search_query = ""
        self._current_page = 1
        self._page_size = settings.page_size
        self._driver: Optional[str] = None
        self._kd_vendor: Optional[str] = None
        self._connected = monitor.is_connected

        self.state: ObservableValue[ListState] = ObservableValue(
            ListState(page_size=self._page_size, is_connected=self._connected)
        )
        self._subscription = None
        self._listener_task: Optional[asyncio.Task] = None

    # View computation

    def _sort_key(self, item: SpbItem):
        return (getattr(item, self._sort_column) or "", item.no_spb)

    def _sort(self) -> None:
        self._all.sort(key=self._sort_key, reverse=not self._sort_ascending)

    def _filtered(self) -> list[SpbItem]:
        if not self._search_query:
            return list(self._all)
        query = self._search_query.lower()
        return [
            item for item in self._all
            if any(query in (getattr(item, f) or "").lower() for f in SEARCH_FIELDS)
        ]

    def _view(self, kind: ListStateKind, message: Optional[str] = None) -> ListState:
        filtered = self._filtered()
        total_pages = math.ceil(len(filtered) / self._page_size)
        start = (self._current_page - 1) * self._page_size
        return ListState(
            kind=kind,
            items=filtered[start:start + self._page_size],
            total_items=len(filtered),
            current_page=self._current_page,
            total_pages=total_pages,
            page_size=self._page_size,
            is_connected=self._connected,
            sort_column=self._sort_column,
            sort_ascending=self._sort_ascending,
            search_query=self._search_query,
            message=message,
        )

    def _emit(self, kind: ListStateKind, message: Optional[str] = None) -> None:
        self.state.value = self._view(kind, message)

    def _emit_current(self) -> None:
        current = self.state.value
        if current.kind in VIEW_KINDS:
            self._emit(current.kind, current.message)

    def _set_list(self, items: list[SpbItem]) -> None:
        self._all = list(items)
        self._sort()
        total_pages = math.ceil(len(self._filtered()) / self._page_size)
        self._current_page = min(max(self._current_page, 1), max(total_pages, 1))

    # Intents

    async def load(self, driver: str, kd_vendor: str) -> None:
        self._driver, self._kd_vendor = driver, kd_vendor
        self.state.value = replace(self.state.value, kind=ListStateKind.LOADING, message=None)
        try:
            items = await self.repository.get_spb_for_driver(driver, kd_vendor)
        except CacheError as e:
            logger.error(f"Failed to load SPB list: {e.message}")
            self._emit(ListStateKind.LOAD_FAILURE, e.message)
            return
        except SyncError as e:
            logger.warning(f"Failed to fetch SPB list: {e.message}")
            self._emit(ListStateKind.SYNC_FAILURE, e.message)
            return
        self._set_list(items)
        self._emit(ListStateKind.LOADED)

    def watch(self, driver: str, kd_vendor: str) -> None:
        """Remember whose list to refresh when connectivity returns."""
        self._driver, self._kd_vendor = driver, kd_vendor

    async def refresh(self, driver: Optional[str] = None, kd_vendor: Optional[str] = None) -> None:
        """Re-fetch from the remote service, keeping the current list on failure."""
        driver = driver or self._driver
        kd_vendor = kd_vendor or self._kd_vendor
        if driver is None or kd_vendor is None:
            return
        self._driver, self._kd_vendor = driver, kd_vendor

        self._emit(ListStateKind.REFRESHING)
        try:
            items = await self.repository.refresh(driver, kd_vendor)
        except CacheError as e:
            logger.error(f"Failed to cache refreshed SPB list: {e.message}")
            self._emit(ListStateKind.LOAD_FAILURE, e.message)
            return
        except SyncError as e:
            logger.warning(f"SPB refresh failed, keeping last list: {e.message}")
            self._emit(ListStateKind.SYNC_FAILURE, e.message)
            return
        self._set_list(items)
        self._emit(ListStateKind.LOADED)

    async def sync(self) -> bool:
        """Push pending forms through the engine, then refresh the list."""
        if self.state.value.kind not in VIEW_KINDS:
            return False

        self._emit(ListStateKind.SYNCING)
        ok = await self.engine.sync_all_pending()
        if not ok:
            message = self.engine.error_message.value
            if message is None and not self._connected:
                message = "No internet connection available"
            self._emit(ListStateKind.SYNC_FAILURE, message or "Sync failed")
            return False

        await self.refresh()
        return self.state.value.kind == ListStateKind.LOADED

    def sort(self, column: str, ascending: Optional[bool] = None) -> None:
        if column not in SORT_COLUMNS:
            raise ValueError(f"Unknown sort column: {column}")
        if ascending is None:
            ascending = not self._sort_ascending if column == self._sort_column else True
        self._sort_column = column
        self._sort_ascending = ascending
        self._sort()
        self._emit_current()

    def search(self, query: str) -> None:
        self._search_query = query.strip()
        self._current_page = 1
        self._emit_current()

    def change_page(self, page: int) -> None:
        total_pages = math.ceil(len(self._filtered()) / self._page_size)
        self._current_page = min(max(page, 1), max(total_pages, 1))
        self._emit_current()

    def change_page_size(self, page_size: int, page: Optional[int] = None) -> None:
        if page_size < 1:
            raise ValueError("Page size must be positive")
        self._page_size = page_size
        total_pages = math.ceil(len(self._filtered()) / self._page_size)
        target = page if page is not None else self._current_page
        self._current_page = min(max(target, 1), max(total_pages, 1))
        self._emit_current()

    async def on_connectivity_changed(self, results: list[ConnectivityResult]) -> None:
        online = is_connected(results)
        was_online = self._connected
        self._connected = online

        if online and not was_online and self._driver is not None:
            logger.info("Connectivity restored, refreshing SPB list and syncing forms")
            await self.refresh()
            await self.engine.sync_all_pending()
        else:
            self._emit_current()

    # Lifecycle

    async def _listen(self, subscription) -> None:
        async for results in subscription:
            try:
                await self.on_connectivity_changed(results)
            except Exception as e:
                logger.error(f"Error handling connectivity change: {e}")

    def start(self) -> None:
        self._connected = self.monitor.is_connected
        self._subscription = self.monitor.subscribe()
        self._listener_task = asyncio.create_task(self._listen(self._subscription))

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._listener_task is not None:
            self._listener_task.cancel()
            await asyncio.gather(self._listener_task, return_exceptions=True)
            self._listener_task = None
