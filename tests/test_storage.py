"""Tests for the form storage adapters."""

import json

import pytest

from fieldsync.core.errors import CacheError
from fieldsync.schemas.forms import FormRecord, FormStatus
from fieldsync.services.storage import KVFormStore, LegacyKeys


def make_record(record_key, **overrides):
    data = dict(
        record_key=record_key,
        status=FormStatus.ISSUE,
        created_by="driver-01",
        latitude="-6.2",
        longitude="106.8",
        reason="flat tire",
        resource_changed=True,
        timestamp=1700000000,
        created_at=1700000000,
        updated_at=1700000000,
    )
    data.update(overrides)
    return FormRecord(**data)


class TestSqlFormStore:

    @pytest.mark.asyncio
    async def test_upsert_inserts_then_updates_in_place(self, form_store):
        await form_store.upsert(make_record("SPB-1"))
        await form_store.upsert(make_record("SPB-1", reason="engine trouble"))

        assert await form_store.count() == 1
        record = await form_store.get("SPB-1")
        assert record.reason == "engine trouble"

    @pytest.mark.asyncio
    async def test_upsert_preserves_sync_meta_by_default(self, form_store):
        await form_store.upsert(make_record("SPB-1", retry_count=2, created_at=100))

        stored = await form_store.upsert(make_record("SPB-1", retry_count=0, created_at=999))

        assert stored.retry_count == 2
        assert stored.created_at == 100

    @pytest.mark.asyncio
    async def test_upsert_can_overwrite_sync_meta(self, form_store):
        await form_store.upsert(make_record("SPB-1", retry_count=2, created_at=100))

        stored = await form_store.upsert(
            make_record("SPB-1", retry_count=0, created_at=999), preserve_sync_meta=False
        )

        assert stored.retry_count == 0
        assert stored.created_at == 999

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, form_store):
        assert await form_store.get("nope") is None

    @pytest.mark.asyncio
    async def test_query_pending_filters_and_orders(self, form_store):
        await form_store.upsert(make_record("late", created_at=300))
        await form_store.upsert(make_record("early", created_at=100))
        await form_store.upsert(make_record("synced", created_at=50, is_synced=True))
        await form_store.upsert(make_record("exhausted", created_at=10, retry_count=3))

        pending = await form_store.query_pending(max_retry_attempts=3)

        assert [r.record_key for r in pending] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_mark_synced_resets_metadata(self, form_store):
        await form_store.upsert(make_record("SPB-1", retry_count=2, last_error="timeout"))

        await form_store.mark_synced("SPB-1")

        record = await form_store.get("SPB-1")
        assert record.is_synced is True
        assert record.retry_count == 0
        assert record.last_error is None

    @pytest.mark.asyncio
    async def test_increment_retry(self, form_store):
        await form_store.upsert(make_record("SPB-1"))

        assert await form_store.increment_retry("SPB-1", "timeout") == 1
        assert await form_store.increment_retry("SPB-1", "Server returned status 500", by=2) == 3

        record = await form_store.get("SPB-1")
        assert record.last_error == "Server returned status 500"
        assert record.last_sync_attempt is not None

    @pytest.mark.asyncio
    async def test_increment_retry_unknown_key_raises(self, form_store):
        with pytest.raises(CacheError):
            await form_store.increment_retry("nope", "timeout")

    @pytest.mark.asyncio
    async def test_reset_retry_only_touches_unsynced(self, form_store):
        await form_store.upsert(make_record("a", retry_count=3, last_error="x"))
        await form_store.upsert(make_record("b", retry_count=3, last_error="x"))
        await form_store.upsert(make_record("c", retry_count=1, is_synced=True))

        assert await form_store.reset_retry("a") == 1
        assert (await form_store.get("a")).retry_count == 0
        assert (await form_store.get("b")).retry_count == 3

        assert await form_store.reset_retry() == 2
        assert (await form_store.get("b")).last_error is None
        assert (await form_store.get("c")).retry_count == 1

    @pytest.mark.asyncio
    async def test_stats_and_clear(self, form_store):
        await form_store.upsert(make_record("a", is_synced=True))
        await form_store.upsert(make_record("b", retry_count=3))
        await form_store.upsert(make_record("c"))

        stats = await form_store.stats(max_retry_attempts=3)
        assert (stats.total_forms, stats.synced_forms, stats.pending_forms, stats.failed_count) == (3, 1, 2, 1)

        assert await form_store.clear() == 3
        assert (await form_store.stats(max_retry_attempts=3)).total_forms == 0

    @pytest.mark.asyncio
    async def test_ensure_schema_is_idempotent(self, form_store):
        await form_store.ensure_schema()
        await form_store.ensure_schema()
        await form_store.upsert(make_record("SPB-1"))
        assert await form_store.count() == 1


class TestKVFormStore:

    @pytest.mark.asyncio
    async def test_upsert_writes_legacy_key_family(self, kv_store):
        store = KVFormStore(kv_store)

        await store.upsert(make_record("SPB-1"))

        data = json.loads(await kv_store.get_string("kendala_form_data_SPB-1"))
        assert data["noSPB"] == "SPB-1"
        assert data["createdBy"] == "driver-01"
        assert await kv_store.get_bool("kendala_driver_changed_SPB-1") is True
        assert await kv_store.get_string("kendala_text_SPB-1") == "flat tire"
        assert await kv_store.get_bool("kendala_synced_SPB-1") is False
        assert await kv_store.get_string_list(LegacyKeys.PENDING_LIST) == ["SPB-1"]

    @pytest.mark.asyncio
    async def test_round_trip_through_adapter(self, kv_store):
        store = KVFormStore(kv_store)
        await store.upsert(make_record("SPB-1", created_at=1234))

        record = await store.get("SPB-1")

        assert record.record_key == "SPB-1"
        assert record.status == FormStatus.ISSUE
        assert record.reason == "flat tire"
        assert record.created_at == 1234

    @pytest.mark.asyncio
    async def test_mark_synced_leaves_pending_list(self, kv_store):
        store = KVFormStore(kv_store)
        await store.upsert(make_record("SPB-1"))
        await store.increment_retry("SPB-1", "timeout")

        await store.mark_synced("SPB-1")

        assert await kv_store.get_string_list(LegacyKeys.PENDING_LIST) == []
        record = await store.get("SPB-1")
        assert record.is_synced is True
        assert record.retry_count == 0
        assert record.last_error is None

    @pytest.mark.asyncio
    async def test_query_pending_respects_budget(self, kv_store):
        store = KVFormStore(kv_store)
        await store.upsert(make_record("a", created_at=2))
        await store.upsert(make_record("b", created_at=1))
        await store.upsert(make_record("c", created_at=3))
        await store.increment_retry("c", "timeout", by=3)

        pending = await store.query_pending(max_retry_attempts=3)

        assert [r.record_key for r in pending] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_clear_removes_only_legacy_keys(self, kv_store):
        store = KVFormStore(kv_store)
        await store.upsert(make_record("SPB-1"))
        await kv_store.set_string("unrelated", "keep me")

        assert await store.clear() == 1

        assert await kv_store.keys() == {"unrelated"}
