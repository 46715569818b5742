"""
Migration of legacy KV-resident forms into the form_records table.

Legacy forms live under the kendala_* key family (see LegacyKeys). migrate()
copies them into the target store by record_key, so running it again
updates rows in place instead of duplicating them.
"""

import asyncio
import json
import logging
from typing import Optional

from fieldsync.core.config import Settings, get_settings
from fieldsync.core.errors import CacheError, MigrationError
from fieldsync.core.observable import ObservableValue
from fieldsync.schemas.forms import FormRecord, MigrationStats, MigrationStatus
from fieldsync.services.kv_store import KVStore
from fieldsync.services.storage import FormStore, KVFormStore, LegacyKeys

logger = logging.getLogger(__name__)

MIGRATION_DONE_KEY = "kendala_migration_done"


class GenerationMigrationService:
    """Moves forms from the legacy KV generation to the relational store."""

    def __init__(self, kv: KVStore, target: FormStore, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.kv = kv
        self.legacy = KVFormStore(kv)
        self.target = target
        self.sample_size = settings.migration_sample_size
        self.verify_threshold = settings.migration_verify_threshold

        self.status: ObservableValue[MigrationStatus] = ObservableValue(MigrationStatus.NOT_STARTED)
        self.error_message: ObservableValue[Optional[str]] = ObservableValue(None)
        self.progress: ObservableValue[int] = ObservableValue(0)
        self.total_items: ObservableValue[int] = ObservableValue(0)

        self._verified = False
        self._lock = asyncio.Lock()

    async def _legacy_keys(self) -> list[str]:
        return sorted(
            LegacyKeys.key_from_data(k) for k in await self.kv.keys()
            if k.startswith(LegacyKeys.DATA)
        )

    async def needs_migration(self) -> bool:
        return bool(await self._legacy_keys())

    async def is_migration_done(self) -> bool:
        return bool(await self.kv.get_bool(MIGRATION_DONE_KEY))

    async def _build_record(self, record_key: str, pending: set[str]) -> Optional[FormRecord]:
        record = await self.legacy.get(record_key)
        if record is None:
            return None
        if record_key in pending:
            record.is_synced = False
        return record

    async def migrate(self) -> bool:
        """
        Copy every legacy form into the target store, then verify.

        Per-record failures are logged and skipped; the outcome is decided by
        verification.
        """
        if self._lock.locked():
            logger.warning("Migration already in progress")
            return False

        async with self._lock:
            self.status.value = MigrationStatus.IN_PROGRESS
            self.error_message.value = None
            self._verified = False

            try:
                keys = await self._legacy_keys()
                pending = set(await self.kv.get_string_list(LegacyKeys.PENDING_LIST) or [])

                self.total_items.value = len(keys)
                self.progress.value = 0
                logger.info(f"Found {len(keys)} legacy forms to migrate")

                await self.target.ensure_schema()

                migrated = 0
                for i, record_key in enumerate(keys):
                    try:
                        record = await self._build_record(record_key, pending)
                        if record is not None:
                            await self.target.upsert(record, preserve_sync_meta=False)
                            migrated += 1
                    except (CacheError, ValueError) as e:
                        logger.error(f"Failed to migrate form {record_key}: {e}")
                    self.progress.value = i + 1

                if not await self._verify(keys):
                    self.status.value = MigrationStatus.FAILED
                    self.error_message.value = "Verification failed: some data may not have been migrated correctly"
                    logger.error("Migration verification failed")
                    return False

                self._verified = True
                await self.kv.set_bool(MIGRATION_DONE_KEY, True)
                self.status.value = MigrationStatus.COMPLETED
                logger.info(f"Migration completed: {migrated}/{len(keys)} forms migrated")
                return True
            except CacheError as e:
                self.status.value = MigrationStatus.FAILED
                self.error_message.value = f"Migration failed: {e.message}"
                logger.error(f"Migration failed: {e.message}")
                return False

    async def _verify(self, keys: list[str]) -> bool:
        """Row count check plus a field comparison on a sample of records."""
        count = await self.target.count()
        if count < len(keys):
            logger.warning(f"Verification failed: expected {len(keys)} forms, found {count}")
            return False

        sample = keys[:self.sample_size]
        if not sample:
            return True

        matched = 0
        for record_key in sample:
            raw = await self.kv.get_string(LegacyKeys.data(record_key))
            if raw is None:
                continue
            try:
                source = json.loads(raw)
            except json.JSONDecodeError:
                continue
            row = await self.target.get(record_key)
            if row is None:
                logger.warning(f"Verification: form {record_key} not found in target store")
                continue
            if row.record_key == record_key and row.created_by == (source.get("createdBy") or ""):
                matched += 1

        rate = matched / len(sample)
        logger.info(f"Verification rate: {rate * 100:.2f}%")
        return rate >= self.verify_threshold

    async def cleanup(self) -> int:
        """
        Remove the legacy key family after a verified migration.

        Raises:
            MigrationError: no verified migration, or the removal failed.
        """
        state = self.status.value
        allowed = self._verified and state == MigrationStatus.COMPLETED
        if not allowed and state == MigrationStatus.NOT_STARTED:
            # Verified in an earlier process
            allowed = await self.is_migration_done()
        if not allowed:
            raise MigrationError(f"Cannot clean up legacy data: migration state is {state.value}")

        self.status.value = MigrationStatus.CLEANING
        try:
            removed = 0
            for kv_key in await self.kv.keys():
                if LegacyKeys.is_legacy(kv_key):
                    await self.kv.remove(kv_key)
                    removed += 1
        except CacheError as e:
            self.status.value = MigrationStatus.FAILED
            self.error_message.value = f"Cleanup failed: {e.message}"
            logger.error(f"Failed to clean up legacy data: {e.message}")
            raise MigrationError(f"Cleanup failed: {e.message}")

        self.status.value = MigrationStatus.COMPLETED
        logger.info(f"Cleaned up {removed} legacy keys")
        return removed

    async def get_migration_stats(self) -> MigrationStats:
        stats = await self.target.stats(max_retry_attempts=0)
        return MigrationStats(
            total_forms=stats.total_forms,
            synced_forms=stats.synced_forms,
            pending_forms=stats.pending_forms,
        )
