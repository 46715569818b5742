"""Shared test fixtures for the fieldsync test suite."""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from fieldsync.core.config import Settings
from fieldsync.core.database import Base
# Import all models so their metadata is registered on Base
import fieldsync.models.database  # noqa: F401
import fieldsync.models.sync_log  # noqa: F401
from fieldsync.schemas.forms import SpbItem
from fieldsync.services.connectivity import ConnectivityMonitor, ConnectivityResult
from fieldsync.services.kv_store import SqlKVStore
from fieldsync.services.storage import KVFormStore, SqlFormStore
from fieldsync.services.sync import FormSyncEngine


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    Provide a file-backed SQLite engine for tests.

    Each test gets a fresh database file with all tables created.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def async_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        api_base_url="http://spb.test",
        max_retry_attempts=3,
        initial_backoff_seconds=5.0,
        page_size=10,
    )


@pytest.fixture
def form_store(session_maker):
    return SqlFormStore(session_maker)


@pytest.fixture
def kv_store(session_maker):
    return SqlKVStore(session_maker)


@pytest.fixture(params=["sql", "kv"])
def any_store(request, form_store, kv_store):
    """Each FormStore implementation in turn."""
    if request.param == "kv":
        return KVFormStore(kv_store)
    return form_store


class FakeRemote:
    """Stand-in for RemoteFormClient that records calls."""

    def __init__(self):
        self.submitted: list[str] = []
        self.submitted_records: list = []
        self.checked: list[str] = []
        self.processed: set[str] = set()
        self.failures: list[Exception] = []
        self.always_fail: Exception | None = None
        self.submit_delay: float = 0
        self.submit_gate: asyncio.Event | None = None
        self.spb_items: list[SpbItem] = []
        self.spb_error: Exception | None = None
        self.spb_calls = 0

    async def submit_form(self, record):
        self.submitted.append(record.record_key)
        self.submitted_records.append(record)
        if self.submit_gate is not None:
            await self.submit_gate.wait()
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.always_fail is not None:
            raise self.always_fail
        if self.failures:
            raise self.failures.pop(0)

    async def check_already_processed(self, record_key):
        self.checked.append(record_key)
        return record_key in self.processed

    async def get_spb_for_driver(self, driver, kd_vendor):
        self.spb_calls += 1
        if self.spb_error is not None:
            raise self.spb_error
        return list(self.spb_items)

    async def close(self):
        pass


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def online_monitor():
    return ConnectivityMonitor([ConnectivityResult.WIFI])


@pytest.fixture
def offline_monitor():
    return ConnectivityMonitor([ConnectivityResult.NONE])


@pytest_asyncio.fixture
async def make_engine(form_store, fake_remote, settings, session_maker, recording_sleep):
    """Factory for engines wired to the test store and fake remote."""
    engines = []

    def _make(monitor, store=None, sleep=None):
        engine = FormSyncEngine(
            store or form_store,
            fake_remote,
            monitor,
            settings,
            session_maker=session_maker,
            sleep=sleep or recording_sleep,
        )
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        await engine.stop()


async def _settle(rounds: int = 10):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settle():
    """Let queued callbacks and freshly created tasks run."""
    return _settle
