"""Tests for the form sync engine.

Tests focus on:
1. save_form: validation, local-first persistence, metadata preservation
2. sync_form: idempotence, already-processed detection, backoff and retry budget
3. sync_all_pending: ordering, single-flight guard, observables, sync log
4. Connectivity reaction and scheduler registration
5. End-to-end offline/online and repeated-failure scenarios
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select, func

from fieldsync.core.errors import CacheError, NetworkError, ServerError
from fieldsync.models.sync_log import SyncLog
from fieldsync.schemas.forms import FormRecord, FormStatus, SyncPhase, SyncState
from fieldsync.services.connectivity import ConnectivityResult
from fieldsync.services.sync import SWEEP_JOB_ID


def issue_payload(**overrides):
    data = {
        "status": "2",
        "createdBy": "driver-01",
        "latitude": "-6.2088",
        "longitude": "106.8456",
        "timestamp": 1700000000,
    }
    data.update(overrides)
    return data


def make_record(record_key, **overrides):
    data = dict(
        record_key=record_key,
        status=FormStatus.ISSUE,
        created_by="driver-01",
        latitude="-6.2088",
        longitude="106.8456",
        reason="flat tire",
        resource_changed=True,
        timestamp=1700000000,
        created_at=1700000000,
        updated_at=1700000000,
    )
    data.update(overrides)
    return FormRecord(**data)


async def blocking_sleep(delay):
    await asyncio.Event().wait()


class TestSaveForm:

    @pytest.mark.asyncio
    async def test_valid_issue_form_is_stored_unsynced(self, make_engine, offline_monitor, fake_remote):
        engine = make_engine(offline_monitor)

        ok = await engine.save_form("SPB-1", issue_payload(), resource_changed=True, reason="flat tire")

        assert ok is True
        record = await engine.get_form("SPB-1")
        assert record.is_synced is False
        assert record.retry_count == 0
        assert record.reason == "flat tire"
        assert record.resource_changed is True
        assert record.status == FormStatus.ISSUE
        assert fake_remote.submitted == []

    @pytest.mark.asyncio
    async def test_issue_without_reason_is_rejected(self, make_engine, offline_monitor):
        engine = make_engine(offline_monitor)

        ok = await engine.save_form("SPB-1", issue_payload(), resource_changed=True, reason=None)

        assert ok is False
        assert await engine.get_form("SPB-1") is None

    @pytest.mark.asyncio
    async def test_issue_without_resource_flag_is_rejected(self, make_engine, offline_monitor):
        engine = make_engine(offline_monitor)

        ok = await engine.save_form("SPB-1", issue_payload(), resource_changed=None, reason="flat tire")

        assert ok is False
        assert await engine.get_form("SPB-1") is None

    @pytest.mark.asyncio
    async def test_missing_coordinates_are_rejected(self, make_engine, offline_monitor):
        engine = make_engine(offline_monitor)

        ok = await engine.save_form(
            "SPB-1", issue_payload(latitude=None), resource_changed=True, reason="flat tire"
        )

        assert ok is False

    @pytest.mark.asyncio
    async def test_empty_record_key_is_rejected(self, make_engine, offline_monitor):
        engine = make_engine(offline_monitor)

        ok = await engine.save_form("", issue_payload(), resource_changed=True, reason="flat tire")

        assert ok is False
        assert await engine.store.count() == 0

    @pytest.mark.asyncio
    async def test_accepted_form_does_not_need_reason(self, make_engine, offline_monitor):
        engine = make_engine(offline_monitor)

        ok = await engine.save_form("SPB-1", issue_payload(status="1"))

        assert ok is True
        record = await engine.get_form("SPB-1")
        assert record.status == FormStatus.ACCEPTED
        assert record.resource_changed is False

    @pytest.mark.asyncio
    async def test_resave_keeps_retry_count_and_created_at(self, make_engine, offline_monitor, form_store):
        await form_store.upsert(make_record(
            "SPB-1", retry_count=2, is_synced=True, last_error="boom", created_at=1000,
        ))
        engine = make_engine(offline_monitor)

        ok = await engine.save_form("SPB-1", issue_payload(), resource_changed=False, reason="new reason")

        assert ok is True
        record = await engine.get_form("SPB-1")
        assert record.retry_count == 2
        assert record.created_at == 1000
        assert record.is_synced is False
        assert record.last_error is None
        assert record.reason == "new reason"

    @pytest.mark.asyncio
    async def test_storage_failure_returns_false(self, make_engine, offline_monitor, form_store):
        engine = make_engine(offline_monitor)

        with patch.object(form_store, "upsert", AsyncMock(side_effect=CacheError("disk full"))):
            ok = await engine.save_form("SPB-1", issue_payload(), resource_changed=True, reason="flat tire")

        assert ok is False

    @pytest.mark.asyncio
    async def test_online_save_syncs_in_background(self, make_engine, online_monitor, fake_remote):
        engine = make_engine(online_monitor)

        ok = await engine.save_form("SPB-1", issue_payload(), resource_changed=True, reason="flat tire")
        await engine.wait_idle()

        assert ok is True
        assert fake_remote.submitted == ["SPB-1"]
        assert await engine.is_form_synced("SPB-1") is True


class TestSyncForm:

    @pytest.mark.asyncio
    async def test_second_sync_does_not_resubmit(self, make_engine, online_monitor, fake_remote, form_store):
        await form_store.upsert(make_record("SPB-1"))
        engine = make_engine(online_monitor)

        first = await engine.sync_form("SPB-1")
        second = await engine.sync_form("SPB-1")

        assert first is True
        assert second is True
        assert fake_remote.submitted == ["SPB-1"]

    @pytest.mark.asyncio
    async def test_already_processed_marks_synced_without_submitting(
        self, make_engine, online_monitor, fake_remote, form_store
    ):
        await form_store.upsert(make_record("SPB-1"))
        fake_remote.processed.add("SPB-1")
        engine = make_engine(online_monitor)

        assert await engine.sync_form("SPB-1") is True

        assert fake_remote.submitted == []
        assert await engine.is_form_synced("SPB-1") is True

    @pytest.mark.asyncio
    async def test_offline_sync_is_a_no_op(self, make_engine, offline_monitor, fake_remote, form_store):
        await form_store.upsert(make_record("SPB-1"))
        engine = make_engine(offline_monitor)

        assert await engine.sync_form("SPB-1") is False

        assert fake_remote.checked == []
        record = await form_store.get("SPB-1")
        assert record.retry_count == 0

    @pytest.mark.asyncio
    async def test_unknown_record_returns_false(self, make_engine, online_monitor):
        engine = make_engine(online_monitor)
        assert await engine.sync_form("missing") is False

    @pytest.mark.asyncio
    async def test_success_clears_error_and_retry_count(self, make_engine, online_monitor, form_store):
        await form_store.upsert(make_record("SPB-1", retry_count=1, last_error="timeout"))
        engine = make_engine(online_monitor)

        assert await engine.sync_form("SPB-1") is True

        record = await form_store.get("SPB-1")
        assert record.is_synced is True
        assert record.retry_count == 0
        assert record.last_error is None
        assert record.last_sync_attempt is not None

    @pytest.mark.asyncio
    async def test_failure_schedules_retry_that_succeeds(
        self, make_engine, online_monitor, fake_remote, form_store, recording_sleep
    ):
        await form_store.upsert(make_record("SPB-1"))
        fake_remote.failures.append(ServerError("Server returned status 503", status_code=503))
        engine = make_engine(online_monitor)

        assert await engine.sync_form("SPB-1") is False
        await engine.wait_idle()

        assert recording_sleep.delays == [10.0]
        assert fake_remote.submitted == ["SPB-1", "SPB-1"]
        record = await form_store.get("SPB-1")
        assert record.is_synced is True
        assert record.retry_count == 0

    @pytest.mark.asyncio
    async def test_backoff_doubles_and_stops_at_budget(
        self, make_engine, online_monitor, fake_remote, form_store, recording_sleep
    ):
        await form_store.upsert(make_record("SPB-1"))
        fake_remote.always_fail = NetworkError("Connection refused")
        engine = make_engine(online_monitor)

        await engine.sync_form("SPB-1")
        await engine.wait_idle()

        assert recording_sleep.delays == [10.0, 20.0]
        assert len(fake_remote.submitted) == 3
        record = await form_store.get("SPB-1")
        assert record.retry_count == 3
        assert record.is_synced is False
        assert record.sync_state(engine.max_retry_attempts) == SyncState.FAILED
        assert engine.has_scheduled_retry("SPB-1") is False

    @pytest.mark.asyncio
    async def test_invalid_stored_record_exhausts_budget(
        self, make_engine, online_monitor, fake_remote, form_store, recording_sleep
    ):
        await form_store.upsert(make_record("SPB-1", reason=None))
        engine = make_engine(online_monitor)

        assert await engine.sync_form("SPB-1") is False
        await engine.wait_idle()

        record = await form_store.get("SPB-1")
        assert record.retry_count == 3
        assert "reason" in record.last_error
        assert fake_remote.submitted == []
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_explicit_sync_cancels_scheduled_retry(
        self, make_engine, online_monitor, fake_remote, form_store, settle
    ):
        await form_store.upsert(make_record("SPB-1"))
        fake_remote.failures.append(NetworkError("timeout"))
        engine = make_engine(online_monitor, sleep=blocking_sleep)

        assert await engine.sync_form("SPB-1") is False
        assert engine.has_scheduled_retry("SPB-1") is True

        assert await engine.sync_form("SPB-1") is True
        await settle()

        assert engine.has_scheduled_retry("SPB-1") is False
        assert fake_remote.submitted == ["SPB-1", "SPB-1"]

    @pytest.mark.asyncio
    async def test_concurrent_calls_for_one_key_submit_once(
        self, make_engine, online_monitor, fake_remote, form_store
    ):
        await form_store.upsert(make_record("SPB-1"))
        fake_remote.submit_delay = 0.01
        engine = make_engine(online_monitor)

        results = await asyncio.gather(engine.sync_form("SPB-1"), engine.sync_form("SPB-1"))

        assert results == [True, True]
        assert fake_remote.submitted == ["SPB-1"]
        assert engine._key_locks == {}

    @pytest.mark.asyncio
    async def test_backoff_delay_formula(self, make_engine, online_monitor):
        engine = make_engine(online_monitor)
        assert [engine.backoff_delay(n) for n in (1, 2, 3)] == [10.0, 20.0, 40.0]


class TestSyncAllPending:

    @pytest.mark.asyncio
    async def test_processes_oldest_first(self, make_engine, online_monitor, fake_remote, form_store):
        await form_store.upsert(make_record("SPB-A", created_at=300))
        await form_store.upsert(make_record("SPB-B", created_at=100))
        await form_store.upsert(make_record("SPB-C", created_at=200))
        engine = make_engine(online_monitor)

        assert await engine.sync_all_pending() is True

        assert fake_remote.submitted == ["SPB-B", "SPB-C", "SPB-A"]
        assert engine.status.value == SyncPhase.SUCCESS
        assert engine.last_sync_time.value is not None

    @pytest.mark.asyncio
    async def test_empty_queue_succeeds(self, make_engine, online_monitor):
        engine = make_engine(online_monitor)
        assert await engine.sync_all_pending() is True
        assert engine.status.value == SyncPhase.SUCCESS

    @pytest.mark.asyncio
    async def test_offline_reports_offline(self, make_engine, offline_monitor, fake_remote, form_store):
        await form_store.upsert(make_record("SPB-1"))
        engine = make_engine(offline_monitor)

        assert await engine.sync_all_pending() is False

        assert engine.status.value == SyncPhase.OFFLINE
        assert fake_remote.submitted == []

    @pytest.mark.asyncio
    async def test_overlapping_call_is_rejected(
        self, make_engine, online_monitor, fake_remote, form_store, settle
    ):
        await form_store.upsert(make_record("SPB-1", created_at=1))
        await form_store.upsert(make_record("SPB-2", created_at=2))
        fake_remote.submit_delay = 0.02
        engine = make_engine(online_monitor)

        first = asyncio.create_task(engine.sync_all_pending())
        await settle(1)
        second = await engine.sync_all_pending()

        assert second is False
        assert await first is True
        assert fake_remote.submitted == ["SPB-1", "SPB-2"]

    @pytest.mark.asyncio
    async def test_failure_sets_status_and_message(self, make_engine, online_monitor, fake_remote, form_store):
        await form_store.upsert(make_record("SPB-1"))
        fake_remote.always_fail = ServerError("Server returned status 500", status_code=500)
        engine = make_engine(online_monitor)

        assert await engine.sync_all_pending() is False
        await engine.wait_idle()

        assert engine.status.value == SyncPhase.FAILED
        assert "1 of 1" in engine.error_message.value

    @pytest.mark.asyncio
    async def test_exhausted_records_are_skipped(self, make_engine, online_monitor, fake_remote, form_store):
        await form_store.upsert(make_record("SPB-1", retry_count=3, last_error="Server returned status 500"))
        engine = make_engine(online_monitor)

        assert await engine.sync_all_pending() is True
        assert fake_remote.submitted == []

    @pytest.mark.asyncio
    async def test_silent_pass_leaves_observables_and_log_alone(
        self, make_engine, online_monitor, form_store, async_session
    ):
        await form_store.upsert(make_record("SPB-1"))
        engine = make_engine(online_monitor)
        seen = []
        engine.status.listen(seen.append)

        assert await engine.sync_all_pending(silent=True) is True

        assert seen == []
        assert engine.status.value == SyncPhase.IDLE
        count = (await async_session.execute(select(func.count()).select_from(SyncLog))).scalar_one()
        assert count == 0

    @pytest.mark.asyncio
    async def test_visible_pass_is_logged(self, make_engine, online_monitor, form_store, async_session):
        await form_store.upsert(make_record("SPB-1"))
        engine = make_engine(online_monitor)
        seen = []
        engine.status.listen(seen.append)

        await engine.force_sync_now()

        assert seen == [SyncPhase.SYNCING, SyncPhase.SUCCESS]
        log = (await async_session.execute(select(SyncLog))).scalar_one()
        assert log.sync_type == "manual"
        assert log.status == "success"
        assert log.details["synced"] == 1

    @pytest.mark.asyncio
    async def test_last_sync_time_uses_utc(self, make_engine, online_monitor, form_store):
        await form_store.upsert(make_record("SPB-1"))
        engine = make_engine(online_monitor)

        assert await engine.force_sync_now() is True

        assert abs(engine.last_sync_time.value - datetime.utcnow()) < timedelta(seconds=5)


class TestRetryFailed:

    @pytest.mark.asyncio
    async def test_manual_retry_restores_budget(self, make_engine, online_monitor, fake_remote, form_store):
        await form_store.upsert(make_record("SPB-1", retry_count=3, last_error="Server returned status 500"))
        engine = make_engine(online_monitor)

        assert await engine.retry_failed("SPB-1") is True

        assert fake_remote.submitted == ["SPB-1"]
        record = await form_store.get("SPB-1")
        assert record.is_synced is True
        assert record.retry_count == 0

    @pytest.mark.asyncio
    async def test_retry_all(self, make_engine, online_monitor, fake_remote, form_store):
        await form_store.upsert(make_record("SPB-1", retry_count=3, created_at=1))
        await form_store.upsert(make_record("SPB-2", retry_count=3, created_at=2))
        engine = make_engine(online_monitor)

        assert await engine.retry_failed() is True
        assert fake_remote.submitted == ["SPB-1", "SPB-2"]


class TestQueries:

    @pytest.mark.asyncio
    async def test_stats(self, make_engine, offline_monitor, form_store):
        await form_store.upsert(make_record("SPB-1", is_synced=True))
        await form_store.upsert(make_record("SPB-2"))
        await form_store.upsert(make_record("SPB-3", retry_count=3))
        await form_store.upsert(make_record("SPB-4", is_synced=True))
        engine = make_engine(offline_monitor)

        stats = await engine.get_sync_stats()

        assert stats.total_forms == 4
        assert stats.synced_forms == 2
        assert stats.pending_forms == 2
        assert stats.failed_count == 1
        assert stats.sync_percentage == 50.0

    @pytest.mark.asyncio
    async def test_pending_forms_exclude_exhausted(self, make_engine, offline_monitor, form_store):
        await form_store.upsert(make_record("SPB-1"))
        await form_store.upsert(make_record("SPB-2", retry_count=3))
        engine = make_engine(offline_monitor)

        pending = await engine.get_pending_forms()

        assert [r.record_key for r in pending] == ["SPB-1"]

    @pytest.mark.asyncio
    async def test_clear_all_sync_data(self, make_engine, offline_monitor, form_store):
        await form_store.upsert(make_record("SPB-1"))
        engine = make_engine(offline_monitor)
        engine.status.value = SyncPhase.FAILED

        assert await engine.clear_all_sync_data() == 1

        assert await form_store.count() == 0
        assert engine.status.value == SyncPhase.IDLE


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_registers_background_sweep(self, make_engine, online_monitor):
        engine = make_engine(online_monitor)
        scheduler = MagicMock()

        await engine.start(scheduler)

        scheduler.add_job.assert_called_once()
        call = scheduler.add_job.call_args
        assert call.kwargs["id"] == SWEEP_JOB_ID
        assert call.args[1].interval == timedelta(minutes=15)

        await engine.stop()
        scheduler.remove_job.assert_called_once_with(SWEEP_JOB_ID)

    @pytest.mark.asyncio
    async def test_background_sweep_is_silent(self, make_engine, online_monitor, fake_remote, form_store):
        await form_store.upsert(make_record("SPB-1"))
        engine = make_engine(online_monitor)
        scheduler = MagicMock()
        await engine.start(scheduler)

        sweep = scheduler.add_job.call_args.args[0]
        await sweep()

        assert fake_remote.submitted == ["SPB-1"]
        assert engine.status.value == SyncPhase.IDLE

    @pytest.mark.asyncio
    async def test_start_offline_reports_offline(self, make_engine, offline_monitor):
        engine = make_engine(offline_monitor)
        await engine.start()
        assert engine.status.value == SyncPhase.OFFLINE

    @pytest.mark.asyncio
    async def test_losing_connectivity_reports_offline(self, make_engine, online_monitor, settle):
        engine = make_engine(online_monitor)
        await engine.start()

        online_monitor.publish([ConnectivityResult.NONE])
        await settle()

        assert engine.status.value == SyncPhase.OFFLINE

    @pytest.mark.asyncio
    async def test_stop_cancels_scheduled_retries(self, make_engine, online_monitor, fake_remote, form_store):
        await form_store.upsert(make_record("SPB-1"))
        fake_remote.failures.append(NetworkError("timeout"))
        engine = make_engine(online_monitor, sleep=blocking_sleep)

        await engine.sync_form("SPB-1")
        assert engine.has_scheduled_retry("SPB-1") is True

        await engine.stop()

        assert engine.has_scheduled_retry("SPB-1") is False
        assert fake_remote.submitted == ["SPB-1"]


class TestScenarios:

    @pytest.mark.asyncio
    async def test_offline_save_then_reconnect_syncs(
        self, make_engine, offline_monitor, fake_remote, settle
    ):
        engine = make_engine(offline_monitor)
        await engine.start()

        ok = await engine.save_form("SPB-100", issue_payload(), resource_changed=True, reason="flat tire")
        assert ok is True
        stats = await engine.get_sync_stats()
        assert stats.pending_forms == 1
        assert stats.synced_forms == 0

        offline_monitor.publish([ConnectivityResult.WIFI])
        await settle()
        await engine.wait_idle()

        stats = await engine.get_sync_stats()
        assert stats.pending_forms == 0
        assert stats.synced_forms == 1
        assert stats.sync_percentage == 100.0
        assert fake_remote.submitted == ["SPB-100"]

    @pytest.mark.asyncio
    async def test_repeated_server_errors_exhaust_budget(
        self, make_engine, online_monitor, fake_remote, recording_sleep
    ):
        fake_remote.always_fail = ServerError("Server returned status 500", status_code=500)
        engine = make_engine(online_monitor)

        ok = await engine.save_form("SPB-200", issue_payload(), resource_changed=False, reason="mill closed")
        await engine.wait_idle()

        assert ok is True
        record = await engine.get_form("SPB-200")
        assert record.retry_count == 3
        assert record.is_synced is False
        assert "500" in record.last_error
        assert len(fake_remote.submitted) == 3
        assert recording_sleep.delays == [10.0, 20.0]

        # No further automatic attempts
        assert await engine.get_pending_forms() == []
        await engine.sync_all_pending()
        assert len(fake_remote.submitted) == 3


async def wait_for_submissions(remote, count):
    while len(remote.submitted) < count:
        await asyncio.sleep(0.01)


class TestStoreBackends:
    """Engine behaviour over both the relational and the legacy key/value store."""

    @pytest.mark.asyncio
    async def test_save_sync_and_stats(self, make_engine, online_monitor, fake_remote, any_store):
        engine = make_engine(online_monitor, store=any_store)

        ok = await engine.save_form("SPB-1", issue_payload(), resource_changed=True, reason="flat tire")
        await engine.wait_idle()

        assert ok is True
        assert fake_remote.submitted == ["SPB-1"]
        stats = await engine.get_sync_stats()
        assert stats.total_forms == 1
        assert stats.synced_forms == 1
        assert stats.sync_percentage == 100.0

    @pytest.mark.asyncio
    async def test_unexpected_remote_error_counts_as_failure(
        self, make_engine, online_monitor, fake_remote, any_store, recording_sleep
    ):
        await any_store.upsert(make_record("SPB-1"))
        fake_remote.always_fail = RuntimeError("boom")
        engine = make_engine(online_monitor, store=any_store)

        assert await engine.sync_form("SPB-1") is False

        record = await any_store.get("SPB-1")
        assert record.retry_count == 1
        assert "boom" in record.last_error
        assert engine.has_scheduled_retry("SPB-1") is True

        await engine.wait_idle()

        record = await any_store.get("SPB-1")
        assert record.retry_count == 3
        assert record.is_synced is False
        assert recording_sleep.delays == [10.0, 20.0]

    @pytest.mark.asyncio
    async def test_unexpected_remote_error_fails_the_pass(
        self, make_engine, online_monitor, fake_remote, any_store
    ):
        await any_store.upsert(make_record("SPB-1"))
        fake_remote.always_fail = RuntimeError("boom")
        engine = make_engine(online_monitor, store=any_store)

        assert await engine.sync_all_pending() is False
        await engine.wait_idle()

        assert engine.status.value == SyncPhase.FAILED
        assert "1 of 1" in engine.error_message.value

    @pytest.mark.asyncio
    async def test_unexpected_store_error_fails_the_pass(self, make_engine, online_monitor, any_store):
        engine = make_engine(online_monitor, store=any_store)

        with patch.object(any_store, "query_pending", AsyncMock(side_effect=RuntimeError("disk gone"))):
            assert await engine.sync_all_pending() is False

        assert engine.status.value == SyncPhase.FAILED
        assert "disk gone" in engine.error_message.value
        # The single-flight guard is released
        assert await engine.sync_all_pending() is True

    @pytest.mark.asyncio
    async def test_resave_during_submission_is_sent(
        self, make_engine, online_monitor, fake_remote, any_store
    ):
        gate = asyncio.Event()
        fake_remote.submit_gate = gate
        engine = make_engine(online_monitor, store=any_store)

        await engine.save_form("SPB-1", issue_payload(), resource_changed=True, reason="v1")
        await asyncio.wait_for(wait_for_submissions(fake_remote, 1), timeout=5)

        resave = asyncio.create_task(
            engine.save_form("SPB-1", issue_payload(), resource_changed=True, reason="v2")
        )
        await asyncio.sleep(0.05)
        # The edit waits for the in-flight submission of v1
        assert not resave.done()

        gate.set()
        assert await resave is True
        await engine.wait_idle()

        assert [r.reason for r in fake_remote.submitted_records] == ["v1", "v2"]
        record = await any_store.get("SPB-1")
        assert record.reason == "v2"
        assert record.is_synced is True
        assert engine._key_locks == {}
