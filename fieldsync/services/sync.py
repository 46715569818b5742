"""Form sync engine - local-first persistence and queued submission."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldsync.core.config import Settings, get_settings
from fieldsync.core.errors import CacheError, SyncError, ValidationError
from fieldsync.core.observable import ObservableValue
from fieldsync.models.sync_log import SyncLog
from fieldsync.schemas.forms import (
    FormPayload,
    FormRecord,
    SyncPhase,
    SyncStats,
    parse_payload,
    validate_form,
)
from fieldsync.services.connectivity import ConnectivityMonitor, ConnectivityResult, is_connected
from fieldsync.services.remote import RemoteFormClient
from fieldsync.services.storage import FormStore, epoch_now

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "form_sync_sweep"


class FormSyncEngine:
    """
    Owns the lifecycle of locally created forms.

    Forms are written to the store first and submitted when connectivity
    allows. Failed submissions are retried with exponential backoff until
    the retry budget is spent; the budget can only be restored by
    retry_failed().
    """

    def __init__(
        self,
        store: FormStore,
        remote: RemoteFormClient,
        monitor: ConnectivityMonitor,
        settings: Optional[Settings] = None,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        settings = settings or get_settings()
        self.store = store
        self.remote = remote
        self.monitor = monitor
        self.session_maker = session_maker
        self.max_retry_attempts = settings.max_retry_attempts
        self.initial_backoff = settings.initial_backoff_seconds
        self.background_sync_minutes = settings.background_sync_minutes
        self._sleep = sleep

        self.status: ObservableValue[SyncPhase] = ObservableValue(SyncPhase.IDLE)
        self.error_message: ObservableValue[Optional[str]] = ObservableValue(None)
        self.last_sync_time: ObservableValue[Optional[datetime]] = ObservableValue(None)

        self._syncing_all = False
        self._was_online = False
        # record_key -> [lock, number of holders and waiters]
        self._key_locks: dict[str, list] = {}
        self._retry_tasks: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._subscription = None
        self._listener_task: Optional[asyncio.Task] = None
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_online(self) -> bool:
        return self.monitor.is_connected

    # Local persistence

    def validate_form(
        self,
        record_key: Optional[str],
        payload: FormPayload | Mapping[str, Any],
        resource_changed: Optional[bool] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Raises ValidationError naming the offending field."""
        validate_form(record_key, parse_payload(payload), resource_changed, reason)

    async def save_form(
        self,
        record_key: Optional[str],
        payload: FormPayload | Mapping[str, Any],
        resource_changed: Optional[bool] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Persist a form locally and, when online, start syncing it.

        Returns False when the form is invalid or could not be stored; in
        that case nothing is written. An existing record keeps its retry
        count and creation time but goes back to unsynced.
        """
        try:
            payload = parse_payload(payload)
            self.validate_form(record_key, payload, resource_changed, reason)
        except ValidationError as e:
            logger.warning(f"Rejected form {record_key}: {e.message}")
            return False

        now = epoch_now()
        record = FormRecord(
            record_key=record_key,
            status=payload.status,
            created_by=payload.created_by,
            latitude=payload.latitude,
            longitude=payload.longitude,
            reason=reason,
            resource_changed=bool(resource_changed),
            timestamp=payload.timestamp or now,
            is_synced=False,
            retry_count=0,
            last_error=None,
            created_at=now,
            updated_at=now,
        )

        try:
            async with self._record_lock(record_key):
                await self.store.upsert(record)
        except CacheError as e:
            logger.error(f"Failed to save form {record_key} locally: {e.message}")
            return False

        logger.info(f"Saved form {record_key} locally")
        if self.is_online:
            self._spawn(self.sync_form(record_key))
        return True

    # Submission

    async def sync_form(self, record_key: str, _scheduled: bool = False) -> bool:
        """
        Submit one form.

        Returns True when the form is synced afterwards (already synced,
        already processed server-side, or accepted now).
        """
        if not _scheduled:
            self._cancel_retry(record_key)

        if not self.is_online:
            logger.info(f"Offline, not syncing form {record_key}")
            return False

        async with self._record_lock(record_key):
            try:
                return await self._attempt(record_key)
            except CacheError as e:
                logger.error(f"Storage error while syncing form {record_key}: {e.message}")
                return False

    async def _attempt(self, record_key: str) -> bool:
        record = await self.store.get(record_key)
        if record is None:
            logger.warning(f"No form data found for {record_key}")
            return False
        if record.is_synced:
            return True

        try:
            validate_form(
                record.record_key,
                FormPayload(
                    status=record.status,
                    created_by=record.created_by,
                    latitude=record.latitude,
                    longitude=record.longitude,
                    timestamp=record.timestamp,
                ),
                record.resource_changed,
                record.reason,
            )
        except ValidationError as e:
            # Resubmitting the same data cannot fix this
            remaining = max(self.max_retry_attempts - record.retry_count, 0)
            await self.store.increment_retry(record_key, f"Validation failed: {e.message}", by=remaining)
            logger.error(f"Form {record_key} is invalid, giving up: {e.message}")
            return False

        if await self.remote.check_already_processed(record_key):
            logger.info(f"Form {record_key} already processed on server, marking synced")
            await self.store.mark_synced(record_key)
            return True

        try:
            await self.remote.submit_form(record)
        except SyncError as e:
            await self._record_failure(record_key, e.message)
            return False
        except Exception as e:
            logger.exception(f"Unexpected error submitting form {record_key}")
            await self._record_failure(record_key, f"Unexpected error: {e}")
            return False

        await self.store.mark_synced(record_key)
        logger.info(f"Form {record_key} synced")
        return True

    async def _record_failure(self, record_key: str, message: str) -> None:
        retry_count = await self.store.increment_retry(record_key, message)
        if retry_count < self.max_retry_attempts:
            self._schedule_retry(record_key, retry_count)
        else:
            logger.error(f"Form {record_key} failed {retry_count} times, giving up until manual retry: {message}")

    @asynccontextmanager
    async def _record_lock(self, record_key: str):
        entry = self._key_locks.setdefault(record_key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._key_locks[record_key]

    def backoff_delay(self, retry_count: int) -> float:
        return self.initial_backoff * (2 ** retry_count)

    def _schedule_retry(self, record_key: str, retry_count: int) -> None:
        delay = self.backoff_delay(retry_count)
        logger.warning(
            f"Retrying form {record_key} in {delay}s (attempt {retry_count + 1}/{self.max_retry_attempts})"
        )
        task = self._spawn(self._run_retry(record_key, delay))
        self._retry_tasks[record_key] = task

    async def _run_retry(self, record_key: str, delay: float) -> None:
        await self._sleep(delay)
        if self._retry_tasks.get(record_key) is asyncio.current_task():
            del self._retry_tasks[record_key]
        await self.sync_form(record_key, _scheduled=True)

    def _cancel_retry(self, record_key: str) -> None:
        task = self._retry_tasks.pop(record_key, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            logger.debug(f"Cancelled scheduled retry for {record_key}")

    def has_scheduled_retry(self, record_key: str) -> bool:
        task = self._retry_tasks.get(record_key)
        return task is not None and not task.done()

    async def sync_all_pending(self, silent: bool = False, sync_type: str = "all") -> bool:
        """
        Submit every queued form, oldest first.

        Only one pass runs at a time; a concurrent call returns False
        immediately. Silent passes leave the observables untouched.
        """
        if self._syncing_all:
            logger.info("Sync already in progress, skipping")
            return False

        if not self.is_online:
            if not silent:
                self.status.value = SyncPhase.OFFLINE
            logger.info("Offline, skipping sync of pending forms")
            return False

        self._syncing_all = True
        started_at = datetime.utcnow()
        if not silent:
            self.status.value = SyncPhase.SYNCING
            self.error_message.value = None

        try:
            pending = await self.store.query_pending(self.max_retry_attempts)
            logger.info(f"Syncing {len(pending)} pending forms")

            results: dict[str, bool] = {}
            for record in pending:
                results[record.record_key] = await self.sync_form(record.record_key)

            failed = [key for key, ok in results.items() if not ok]
            all_synced = not failed

            if not silent:
                if all_synced:
                    self.status.value = SyncPhase.SUCCESS
                    self.last_sync_time.value = datetime.utcnow()
                else:
                    self.status.value = SyncPhase.FAILED
                    self.error_message.value = f"Failed to sync {len(failed)} of {len(results)} forms"
                await self._log_pass(
                    sync_type,
                    started_at,
                    "success" if all_synced else "failed",
                    {"total": len(results), "synced": len(results) - len(failed), "failed": failed},
                    self.error_message.value,
                )

            logger.info(f"Sync pass finished: {len(results) - len(failed)}/{len(results)} synced")
            return all_synced
        except CacheError as e:
            logger.error(f"Error syncing pending forms: {e.message}")
            if not silent:
                self.status.value = SyncPhase.FAILED
                self.error_message.value = e.message
                await self._log_pass(sync_type, started_at, "failed", None, e.message)
            return False
        except Exception as e:
            logger.exception("Unexpected error syncing pending forms")
            if not silent:
                self.status.value = SyncPhase.FAILED
                self.error_message.value = f"Unexpected error: {e}"
                await self._log_pass(sync_type, started_at, "failed", None, self.error_message.value)
            return False
        finally:
            self._syncing_all = False

    async def _log_pass(
        self,
        sync_type: str,
        started_at: datetime,
        status: str,
        details: Optional[dict],
        error_message: Optional[str],
    ) -> None:
        if self.session_maker is None:
            return
        try:
            async with self.session_maker() as session:
                session.add(SyncLog(
                    sync_type=sync_type,
                    started_at=started_at,
                    completed_at=datetime.utcnow(),
                    status=status,
                    details=details,
                    error_message=error_message,
                ))
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to write sync log: {e}")

    async def force_sync_now(self) -> bool:
        return await self.sync_all_pending(silent=False, sync_type="manual")

    async def retry_failed(self, record_key: Optional[str] = None) -> bool:
        """Restore the retry budget of one or all unsynced forms and sync them."""
        reset = await self.store.reset_retry(record_key)
        logger.info(f"Reset retry budget for {reset} forms")
        if record_key is not None:
            return await self.sync_form(record_key)
        return await self.sync_all_pending(sync_type="manual")

    # Queries

    async def get_sync_stats(self) -> SyncStats:
        return await self.store.stats(self.max_retry_attempts)

    async def is_form_synced(self, record_key: str) -> bool:
        record = await self.store.get(record_key)
        return record is not None and record.is_synced

    async def get_pending_forms(self) -> list[FormRecord]:
        return await self.store.query_pending(self.max_retry_attempts)

    async def get_form(self, record_key: str) -> Optional[FormRecord]:
        return await self.store.get(record_key)

    async def clear_all_sync_data(self) -> int:
        for record_key in list(self._retry_tasks):
            self._cancel_retry(record_key)
        removed = await self.store.clear()
        self.status.value = SyncPhase.IDLE
        self.error_message.value = None
        logger.info(f"Cleared {removed} forms")
        return removed

    # Lifecycle

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until no spawned syncs or scheduled retries remain."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def on_connectivity_changed(self, results: list[ConnectivityResult]) -> None:
        online = is_connected(results)
        if online and not self._was_online:
            logger.info("Connectivity restored, syncing pending forms")
            self._spawn(self.sync_all_pending(sync_type="reconnect"))
        elif not online and not self._syncing_all:
            self.status.value = SyncPhase.OFFLINE
        self._was_online = online

    async def _listen(self, subscription) -> None:
        async for results in subscription:
            try:
                await self.on_connectivity_changed(results)
            except Exception as e:
                logger.error(f"Error handling connectivity change: {e}")

    async def _background_sweep(self) -> None:
        if not self.is_online:
            return
        logger.info("Running background sync sweep")
        await self.sync_all_pending(silent=True, sync_type="background")

    async def start(self, scheduler: Optional[AsyncIOScheduler] = None) -> None:
        """Subscribe to connectivity changes and register the background sweep."""
        results = await self.monitor.check_connectivity()
        self._was_online = is_connected(results)
        if not self._was_online:
            self.status.value = SyncPhase.OFFLINE

        self._subscription = self.monitor.subscribe()
        self._listener_task = asyncio.create_task(self._listen(self._subscription))

        if scheduler is not None:
            scheduler.add_job(
                self._background_sweep,
                IntervalTrigger(minutes=self.background_sync_minutes),
                id=SWEEP_JOB_ID,
                name="Background form sync",
                replace_existing=True,
            )
            self._scheduler = scheduler
        logger.info(f"Form sync engine started ({'online' if self._was_online else 'offline'})")

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._listener_task is not None:
            self._listener_task.cancel()
            await asyncio.gather(self._listener_task, return_exceptions=True)
            self._listener_task = None

        if self._scheduler is not None:
            try:
                self._scheduler.remove_job(SWEEP_JOB_ID)
            except JobLookupError:
                pass
            self._scheduler = None

        self._retry_tasks.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Form sync engine stopped")
