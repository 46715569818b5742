import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from fieldsync.core.config import get_settings
from fieldsync.core.database import init_db, async_session_maker
from fieldsync.api import config, forms, migration, spb
from fieldsync.services.connectivity import HttpConnectivityMonitor
from fieldsync.services.controller import SpbListController
from fieldsync.services.kv_store import SqlKVStore
from fieldsync.services.migration import GenerationMigrationService
from fieldsync.services.remote import RemoteFormClient
from fieldsync.services.scheduler import start_scheduler, stop_scheduler
from fieldsync.services.spb_repository import SpbRepository
from fieldsync.services.storage import SqlFormStore
from fieldsync.services.sync import FormSyncEngine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Startup
    await init_db()

    monitor = HttpConnectivityMonitor(settings)
    remote = RemoteFormClient(settings)
    store = SqlFormStore(async_session_maker)
    kv = SqlKVStore(async_session_maker)

    app.state.engine = FormSyncEngine(store, remote, monitor, settings, session_maker=async_session_maker)
    app.state.migration = GenerationMigrationService(kv, store, settings)
    app.state.spb_repository = SpbRepository(async_session_maker, remote, monitor)
    app.state.spb_controller = SpbListController(app.state.spb_repository, app.state.engine, monitor, settings)

    if await app.state.migration.needs_migration() and not await app.state.migration.is_migration_done():
        logger.info("Legacy form data found, migrating")
        await app.state.migration.migrate()

    await start_scheduler(app.state.engine, monitor)
    app.state.spb_controller.start()
    yield
    # Shutdown
    await app.state.spb_controller.stop()
    await stop_scheduler(app.state.engine)
    monitor.close()
    await remote.close()


# Create FastAPI application
app = FastAPI(
    title="Field Form Sync",
    description="Offline-first sync of SPB driver forms",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(config.router)
app.include_router(forms.router)
app.include_router(migration.router)
app.include_router(spb.router)
