"""Local-first access to the driver's SPB list."""

import logging
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldsync.core.errors import CacheError, NetworkError, ServerError
from fieldsync.models.database import SpbRecordRow
from fieldsync.schemas.forms import SpbItem
from fieldsync.services.connectivity import ConnectivityMonitor
from fieldsync.services.remote import RemoteFormClient
from fieldsync.services.storage import epoch_now

logger = logging.getLogger(__name__)


class SpbRepository:
    """Caches SPB lists from the remote service in spb_records."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        remote: RemoteFormClient,
        monitor: ConnectivityMonitor,
    ):
        self.session_maker = session_maker
        self.remote = remote
        self.monitor = monitor

    async def get_local(self, driver: str, kd_vendor: str) -> list[SpbItem]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(SpbRecordRow)
                    .where(SpbRecordRow.driver == driver, SpbRecordRow.kode_vendor == kd_vendor)
                    .order_by(SpbRecordRow.id)
                )
                rows = result.scalars().all()
        except Exception as e:
            logger.error(f"Failed to read cached SPB list for {driver}: {e}")
            raise CacheError(f"Failed to read SPB data: {e}")
        return [SpbItem.model_validate(r) for r in rows]

    async def save_local(self, items: list[SpbItem], driver: str, kd_vendor: str) -> None:
        now = epoch_now()
        try:
            async with self.session_maker() as session:
                for item in items:
                    data = {
                        "no_spb": item.no_spb,
                        "tgl_antar_buah": item.tgl_antar_buah,
                        "mill_tujuan": item.mill_tujuan,
                        "status": item.status,
                        "keterangan": item.keterangan,
                        "kode_vendor": item.kode_vendor or kd_vendor,
                        "driver": item.driver or driver,
                        "no_polisi": item.no_polisi,
                        "driver_name": item.driver_name,
                        "mill_tujuan_name": item.mill_tujuan_name,
                        "is_synced": True,
                        "created_at": now,
                        "updated_at": now,
                    }
                    stmt = insert(SpbRecordRow.__table__).values(**data)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["no_spb"],
                        set_={k: v for k, v in data.items() if k not in ("no_spb", "created_at")},
                    )
                    await session.execute(stmt)
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to cache SPB list for {driver}: {e}")
            raise CacheError(f"Failed to save SPB data: {e}")
        logger.info(f"Cached {len(items)} SPB entries for driver {driver}")

    async def _fetch_remote(self, driver: str, kd_vendor: str) -> list[SpbItem]:
        items = await self.remote.get_spb_for_driver(driver, kd_vendor)
        await self.save_local(items, driver, kd_vendor)
        return items

    async def refresh(self, driver: str, kd_vendor: str) -> list[SpbItem]:
        """Fetch from the remote service and cache, without any fallback."""
        if not self.monitor.is_connected:
            raise NetworkError("No internet connection available")
        return await self._fetch_remote(driver, kd_vendor)

    async def get_spb_for_driver(
        self,
        driver: str,
        kd_vendor: str,
        force_refresh: bool = False,
    ) -> list[SpbItem]:
        """
        Return the SPB list for a driver/vendor scope.

        Reads the local cache first. The remote service is consulted when
        forced or when the cache is empty, and its result is cached. A remote
        failure falls back to cached data if there is any.

        Raises:
            CacheError: local read failed and nothing could be fetched.
            NetworkError, ServerError: remote fetch failed with no local data.
        """
        online = self.monitor.is_connected
        local: list[SpbItem] = []
        local_error: Optional[CacheError] = None

        if not force_refresh or not online:
            try:
                local = await self.get_local(driver, kd_vendor)
            except CacheError as e:
                local_error = e
            if local:
                return local

        if not online:
            if local_error is not None:
                raise local_error
            raise NetworkError("No internet connection available")

        try:
            return await self._fetch_remote(driver, kd_vendor)
        except (NetworkError, ServerError) as e:
            if force_refresh:
                try:
                    cached = await self.get_local(driver, kd_vendor)
                except CacheError:
                    cached = []
                if cached:
                    logger.warning(f"Remote SPB fetch failed for {driver}, using cached data: {e.message}")
                    return cached
            if local_error is not None:
                raise local_error
            raise

    async def clear_all(self) -> int:
        try:
            async with self.session_maker() as session:
                result = await session.execute(delete(SpbRecordRow))
                await session.commit()
                return result.rowcount
        except Exception as e:
            logger.error(f"Failed to clear SPB cache: {e}")
            raise CacheError(f"Failed to clear SPB data: {e}")
