"""APScheduler setup for background sync and connectivity probing."""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fieldsync.core.config import get_settings
from fieldsync.services.connectivity import ConnectivityMonitor
from fieldsync.services.sync import FormSyncEngine

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def run_connectivity_probe(monitor: ConnectivityMonitor):
    """Refresh the monitor's view of connectivity."""
    try:
        await monitor.check_connectivity()
    except Exception as e:
        logger.error(f"Connectivity probe failed: {e}")


async def start_scheduler(engine: FormSyncEngine, monitor: ConnectivityMonitor):
    """Start the APScheduler and the engine's background sweep."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return

    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_connectivity_probe,
        IntervalTrigger(seconds=settings.connectivity_probe_seconds),
        args=[monitor],
        id="connectivity_probe",
        name="Connectivity probe",
        replace_existing=True
    )

    scheduler.start()
    await engine.start(scheduler)
    logger.info(
        f"Scheduler started - sync sweep every {settings.background_sync_minutes} min, "
        f"connectivity probe every {settings.connectivity_probe_seconds}s"
    )


async def stop_scheduler(engine: FormSyncEngine | None = None):
    """Stop the engine and the APScheduler."""
    global scheduler

    if engine is not None:
        await engine.stop()

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
