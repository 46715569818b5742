"""
Form storage backends.

The sync engine talks to a FormStore; each storage generation provides one
adapter. SqlFormStore is the current generation (form_records table),
KVFormStore reads and writes the legacy key family in the KV store.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldsync.core.errors import CacheError
from fieldsync.models.database import FormRecordRow
from fieldsync.schemas.forms import FormRecord, FormStatus, SyncStats
from fieldsync.services.kv_store import KVStore

logger = logging.getLogger(__name__)


def epoch_now() -> int:
    """Current time in epoch seconds."""
    return int(time.time())


class FormStore(ABC):
    """Storage operations the sync engine needs for FormRecords."""

    @abstractmethod
    async def upsert(self, record: FormRecord, preserve_sync_meta: bool = True) -> FormRecord:
        """
        Insert or update a record by record_key.

        With preserve_sync_meta, an existing row keeps its retry_count and
        created_at; the stored record is returned.
        """

    @abstractmethod
    async def get(self, record_key: str) -> Optional[FormRecord]: ...

    @abstractmethod
    async def query_pending(self, max_retry_attempts: int) -> list[FormRecord]:
        """Unsynced records still under the retry budget, oldest first."""

    @abstractmethod
    async def mark_synced(self, record_key: str) -> None: ...

    @abstractmethod
    async def increment_retry(self, record_key: str, error: str, by: int = 1) -> int:
        """Record a failed attempt. Returns the new retry count."""

    @abstractmethod
    async def reset_retry(self, record_key: Optional[str] = None) -> int:
        """Reset the retry budget of one or all unsynced records. Returns rows touched."""

    @abstractmethod
    async def list_all(self) -> list[FormRecord]: ...

    @abstractmethod
    async def clear(self) -> int: ...

    async def count(self) -> int:
        return len(await self.list_all())

    async def ensure_schema(self) -> None:
        """Create backing structures if missing."""

    async def stats(self, max_retry_attempts: int) -> SyncStats:
        records = await self.list_all()
        synced = sum(1 for r in records if r.is_synced)
        failed = sum(1 for r in records if not r.is_synced and r.retry_count >= max_retry_attempts)
        return SyncStats(
            total_forms=len(records),
            synced_forms=synced,
            pending_forms=len(records) - synced,
            failed_count=failed,
        )


class SqlFormStore(FormStore):
    """FormRecords in the form_records table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker
        # Single writer for form_records
        self._write_lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        """Create form_records and its indexes if they do not exist."""
        table = FormRecordRow.__table__

        def _create(sync_conn):
            table.create(sync_conn, checkfirst=True)
            for index in table.indexes:
                index.create(sync_conn, checkfirst=True)

        try:
            async with self.session_maker() as session:
                conn = await session.connection()
                await conn.run_sync(_create)
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to ensure form_records table exists: {e}")
            raise CacheError(f"Failed to create form_records table: {e}")

    async def upsert(self, record: FormRecord, preserve_sync_meta: bool = True) -> FormRecord:
        async with self._write_lock:
            try:
                async with self.session_maker() as session:
                    async with session.begin():
                        existing = (await session.execute(
                            select(FormRecordRow).where(FormRecordRow.record_key == record.record_key)
                        )).scalar_one_or_none()

                        data = record.to_row()
                        if existing is None:
                            row = FormRecordRow(**data)
                            session.add(row)
                        else:
                            if preserve_sync_meta:
                                data["retry_count"] = existing.retry_count
                                data["created_at"] = existing.created_at
                            for key, value in data.items():
                                setattr(existing, key, value)
                            row = existing
                        await session.flush()
                        stored = FormRecord.model_validate(row)
            except Exception as e:
                logger.error(f"Failed to upsert form {record.record_key}: {e}")
                raise CacheError(f"Failed to save form {record.record_key}: {e}")
        return stored

    async def get(self, record_key: str) -> Optional[FormRecord]:
        try:
            async with self.session_maker() as session:
                row = (await session.execute(
                    select(FormRecordRow).where(FormRecordRow.record_key == record_key)
                )).scalar_one_or_none()
        except Exception as e:
            logger.error(f"Failed to read form {record_key}: {e}")
            raise CacheError(f"Failed to read form {record_key}: {e}")
        return FormRecord.model_validate(row) if row else None

    async def query_pending(self, max_retry_attempts: int) -> list[FormRecord]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(FormRecordRow)
                    .where(
                        FormRecordRow.is_synced == 0,
                        FormRecordRow.retry_count < max_retry_attempts,
                    )
                    .order_by(FormRecordRow.created_at, FormRecordRow.id)
                )
                rows = result.scalars().all()
        except Exception as e:
            logger.error(f"Failed to query pending forms: {e}")
            raise CacheError(f"Failed to query pending forms: {e}")
        return [FormRecord.model_validate(r) for r in rows]

    async def _update(self, record_key: str, **values) -> int:
        async with self._write_lock:
            try:
                async with self.session_maker() as session:
                    async with session.begin():
                        result = await session.execute(
                            update(FormRecordRow)
                            .where(FormRecordRow.record_key == record_key)
                            .values(**values)
                        )
                        return result.rowcount
            except Exception as e:
                logger.error(f"Failed to update form {record_key}: {e}")
                raise CacheError(f"Failed to update form {record_key}: {e}")

    async def mark_synced(self, record_key: str) -> None:
        now = epoch_now()
        await self._update(
            record_key,
            is_synced=1,
            retry_count=0,
            last_error=None,
            last_sync_attempt=now,
            updated_at=now,
        )

    async def increment_retry(self, record_key: str, error: str, by: int = 1) -> int:
        now = epoch_now()
        async with self._write_lock:
            try:
                async with self.session_maker() as session:
                    async with session.begin():
                        row = (await session.execute(
                            select(FormRecordRow).where(FormRecordRow.record_key == record_key)
                        )).scalar_one_or_none()
                        if row is None:
                            raise CacheError(f"Form {record_key} not found")
                        row.retry_count = row.retry_count + max(by, 0)
                        row.last_error = error
                        row.last_sync_attempt = now
                        row.updated_at = now
                        return row.retry_count
            except CacheError:
                raise
            except Exception as e:
                logger.error(f"Failed to record retry for form {record_key}: {e}")
                raise CacheError(f"Failed to record retry for {record_key}: {e}")

    async def reset_retry(self, record_key: Optional[str] = None) -> int:
        conditions = [FormRecordRow.is_synced == 0]
        if record_key is not None:
            conditions.append(FormRecordRow.record_key == record_key)
        async with self._write_lock:
            try:
                async with self.session_maker() as session:
                    async with session.begin():
                        result = await session.execute(
                            update(FormRecordRow)
                            .where(and_(*conditions))
                            .values(retry_count=0, last_error=None, updated_at=epoch_now())
                        )
                        return result.rowcount
            except Exception as e:
                logger.error(f"Failed to reset retry count: {e}")
                raise CacheError(f"Failed to reset retry count: {e}")

    async def list_all(self) -> list[FormRecord]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(FormRecordRow).order_by(FormRecordRow.created_at, FormRecordRow.id)
                )
                rows = result.scalars().all()
        except Exception as e:
            logger.error(f"Failed to list forms: {e}")
            raise CacheError(f"Failed to list forms: {e}")
        return [FormRecord.model_validate(r) for r in rows]

    async def count(self) -> int:
        try:
            async with self.session_maker() as session:
                result = await session.execute(select(func.count()).select_from(FormRecordRow))
                return result.scalar_one() or 0
        except Exception as e:
            logger.error(f"Failed to count forms: {e}")
            raise CacheError(f"Failed to count forms: {e}")

    async def stats(self, max_retry_attempts: int) -> SyncStats:
        try:
            async with self.session_maker() as session:
                total = (await session.execute(
                    select(func.count()).select_from(FormRecordRow)
                )).scalar_one() or 0
                synced = (await session.execute(
                    select(func.count()).select_from(FormRecordRow).where(FormRecordRow.is_synced == 1)
                )).scalar_one() or 0
                failed = (await session.execute(
                    select(func.count()).select_from(FormRecordRow).where(
                        FormRecordRow.is_synced == 0,
                        FormRecordRow.retry_count >= max_retry_attempts,
                    )
                )).scalar_one() or 0
        except Exception as e:
            logger.error(f"Failed to get sync stats: {e}")
            raise CacheError(f"Failed to get sync stats: {e}")

        return SyncStats(
            total_forms=total,
            synced_forms=synced,
            pending_forms=total - synced,
            failed_count=failed,
        )

    async def clear(self) -> int:
        async with self._write_lock:
            try:
                async with self.session_maker() as session:
                    async with session.begin():
                        result = await session.execute(delete(FormRecordRow))
                        return result.rowcount
            except Exception as e:
                logger.error(f"Failed to clear forms: {e}")
                raise CacheError(f"Failed to clear forms: {e}")


class LegacyKeys:
    """Key family used by the KV-based storage generation."""

    DATA = "kendala_form_data_"
    DRIVER_CHANGED = "kendala_driver_changed_"
    TEXT = "kendala_text_"
    SYNCED = "kendala_synced_"
    MODIFIED = "kendala_modified_"
    RETRY = "kendala_retry_"
    ERROR = "kendala_error_"
    PENDING_LIST = "pending_kendala_forms"

    PER_RECORD = (DATA, DRIVER_CHANGED, TEXT, SYNCED, MODIFIED, RETRY, ERROR)

    @classmethod
    def data(cls, record_key: str) -> str:
        return f"{cls.DATA}{record_key}"

    @classmethod
    def key_from_data(cls, kv_key: str) -> str:
        return kv_key[len(cls.DATA):]

    @classmethod
    def is_legacy(cls, kv_key: str) -> bool:
        return kv_key == cls.PENDING_LIST or kv_key.startswith(cls.PER_RECORD)


class KVFormStore(FormStore):
    """FormRecords spread over the legacy KV key family."""

    def __init__(self, kv: KVStore):
        self.kv = kv
        self._write_lock = asyncio.Lock()

    async def _read(self, record_key: str) -> Optional[FormRecord]:
        raw = await self.kv.get_string(LegacyKeys.data(record_key))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CacheError(f"Corrupt legacy form data for {record_key}: {e}")

        modified_ms = await self.kv.get_int(f"{LegacyKeys.MODIFIED}{record_key}")
        timestamp = int(data.get("timestamp") or 0)
        created_at = int(data.get("createdAt") or timestamp)
        updated_at = modified_ms // 1000 if modified_ms else created_at
        reason = await self.kv.get_string(f"{LegacyKeys.TEXT}{record_key}")

        return FormRecord(
            record_key=record_key,
            status=FormStatus(str(data.get("status", FormStatus.ISSUE.value))),
            created_by=data.get("createdBy") or "",
            latitude=str(data.get("latitude") or "0.0"),
            longitude=str(data.get("longitude") or "0.0"),
            reason=data.get("alasan") or reason,
            resource_changed=await self.kv.get_bool(f"{LegacyKeys.DRIVER_CHANGED}{record_key}") or False,
            timestamp=timestamp,
            is_synced=await self.kv.get_bool(f"{LegacyKeys.SYNCED}{record_key}") or False,
            retry_count=await self.kv.get_int(f"{LegacyKeys.RETRY}{record_key}") or 0,
            last_error=await self.kv.get_string(f"{LegacyKeys.ERROR}{record_key}"),
            created_at=created_at,
            updated_at=updated_at,
        )

    async def _pending_list(self) -> list[str]:
        return await self.kv.get_string_list(LegacyKeys.PENDING_LIST) or []

    async def upsert(self, record: FormRecord, preserve_sync_meta: bool = True) -> FormRecord:
        key = record.record_key
        async with self._write_lock:
            existing = await self._read(key)
            retry_count = record.retry_count
            created_at = record.created_at
            if existing is not None and preserve_sync_meta:
                retry_count = existing.retry_count
                created_at = existing.created_at

            data = {
                "noSPB": key,
                "status": record.status.value,
                "createdBy": record.created_by,
                "latitude": record.latitude,
                "longitude": record.longitude,
                "alasan": record.reason,
                "timestamp": record.timestamp,
                "createdAt": created_at,
            }
            await self.kv.set_string(LegacyKeys.data(key), json.dumps(data))
            await self.kv.set_bool(f"{LegacyKeys.DRIVER_CHANGED}{key}", record.resource_changed)
            await self.kv.set_string(f"{LegacyKeys.TEXT}{key}", record.reason or "")
            await self.kv.set_bool(f"{LegacyKeys.SYNCED}{key}", record.is_synced)
            await self.kv.set_int(f"{LegacyKeys.RETRY}{key}", retry_count)
            await self.kv.set_int(f"{LegacyKeys.MODIFIED}{key}", record.updated_at * 1000)
            if record.last_error:
                await self.kv.set_string(f"{LegacyKeys.ERROR}{key}", record.last_error)
            else:
                await self.kv.remove(f"{LegacyKeys.ERROR}{key}")

            pending = await self._pending_list()
            if not record.is_synced and key not in pending:
                pending.append(key)
                await self.kv.set_string_list(LegacyKeys.PENDING_LIST, pending)
            elif record.is_synced and key in pending:
                pending.remove(key)
                await self.kv.set_string_list(LegacyKeys.PENDING_LIST, pending)

        stored = await self._read(key)
        if stored is None:
            raise CacheError(f"Form {key} missing after write")
        return stored

    async def get(self, record_key: str) -> Optional[FormRecord]:
        return await self._read(record_key)

    async def query_pending(self, max_retry_attempts: int) -> list[FormRecord]:
        records = []
        for key in await self._pending_list():
            record = await self._read(key)
            if record is None:
                logger.warning(f"No form data found for pending SPB: {key}")
                continue
            if not record.is_synced and record.retry_count < max_retry_attempts:
                records.append(record)
        records.sort(key=lambda r: r.created_at)
        return records

    async def mark_synced(self, record_key: str) -> None:
        async with self._write_lock:
            await self.kv.set_bool(f"{LegacyKeys.SYNCED}{record_key}", True)
            await self.kv.set_int(f"{LegacyKeys.RETRY}{record_key}", 0)
            await self.kv.remove(f"{LegacyKeys.ERROR}{record_key}")
            await self.kv.set_int(f"{LegacyKeys.MODIFIED}{record_key}", epoch_now() * 1000)
            pending = await self._pending_list()
            if record_key in pending:
                pending.remove(record_key)
                await self.kv.set_string_list(LegacyKeys.PENDING_LIST, pending)

    async def increment_retry(self, record_key: str, error: str, by: int = 1) -> int:
        async with self._write_lock:
            if not await self.kv.contains(LegacyKeys.data(record_key)):
                raise CacheError(f"Form {record_key} not found")
            count = (await self.kv.get_int(f"{LegacyKeys.RETRY}{record_key}") or 0) + max(by, 0)
            await self.kv.set_int(f"{LegacyKeys.RETRY}{record_key}", count)
            await self.kv.set_string(f"{LegacyKeys.ERROR}{record_key}", error)
            await self.kv.set_int(f"{LegacyKeys.MODIFIED}{record_key}", epoch_now() * 1000)
            return count

    async def reset_retry(self, record_key: Optional[str] = None) -> int:
        keys = [record_key] if record_key is not None else await self._pending_list()
        touched = 0
        async with self._write_lock:
            for key in keys:
                if await self.kv.get_bool(f"{LegacyKeys.SYNCED}{key}"):
                    continue
                if not await self.kv.contains(LegacyKeys.data(key)):
                    continue
                await self.kv.set_int(f"{LegacyKeys.RETRY}{key}", 0)
                await self.kv.remove(f"{LegacyKeys.ERROR}{key}")
                touched += 1
        return touched

    async def list_all(self) -> list[FormRecord]:
        records = []
        for kv_key in sorted(await self.kv.keys()):
            if not kv_key.startswith(LegacyKeys.DATA):
                continue
            record = await self._read(LegacyKeys.key_from_data(kv_key))
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.created_at)
        return records

    async def clear(self) -> int:
        async with self._write_lock:
            removed = 0
            for kv_key in await self.kv.keys():
                if LegacyKeys.is_legacy(kv_key):
                    await self.kv.remove(kv_key)
                    if kv_key.startswith(LegacyKeys.DATA):
                        removed += 1
            logger.info(f"Cleared {removed} legacy forms")
            return removed
