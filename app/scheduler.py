"""
Scheduler for background sync maintenance

Uses APScheduler to resume historical imports whose driving process died
(deploy, crash) while the connection was BULK_IMPORTING, and to keep
completed connections current with a recurring trailing-window refresh.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timedelta

from app.config import get_settings
from app.services.connection_sync import get_sync_controller
from app.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()


async def resume_bulk_imports():
    """Re-attach to RUNNING bulk jobs of connections still BULK_IMPORTING"""
    try:
        results = await get_sync_controller().resume_orphaned_imports()
        if results:
            log.info(f"Bulk import resume finished for {len(results)} connections")
    except Exception as e:
        log.error(f"Bulk import resume error: {str(e)}")


async def refresh_connections():
    """Re-sync the trailing window of every COMPLETED connection"""
    try:
        results = await get_sync_controller().refresh_connections()
        if results:
            log.info(f"Connection refresh finished for {len(results)} connections")
    except Exception as e:
        log.error(f"Connection refresh error: {str(e)}")


def setup_scheduler():
    """
    Configure the scheduler.

    - Resume orphaned bulk imports: every resume_bulk_imports_minutes,
      first run shortly after startup
    - Refresh completed connections: every refresh_connections_hours
    """
    scheduler.add_job(
        resume_bulk_imports,
        trigger=IntervalTrigger(minutes=settings.resume_bulk_imports_minutes),
        id='resume_bulk_imports',
        name='Resume Orphaned Bulk Imports',
        replace_existing=True,
        max_instances=1,
        next_run_time=datetime.now() + timedelta(seconds=30),
    )

    scheduler.add_job(
        refresh_connections,
        trigger=IntervalTrigger(hours=settings.refresh_connections_hours),
        id='refresh_connections',
        name='Refresh Completed Connections',
        replace_existing=True,
        max_instances=1,
    )


def start_scheduler():
    """Start the scheduler"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    scheduler.shutdown()
    log.info("Scheduler stopped")
