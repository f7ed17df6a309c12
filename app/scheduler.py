"""
Scheduler for automatic reconciliation runs

Uses APScheduler to run the full sync on a fixed interval.
"""
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import get_settings
from app.services.exceptions import SyncInProgressError
from app.services.reconciliation_service import build_engine
from app.utils.helpers import utcnow
from app.utils.logger import log

AUTO_SYNC_JOB_ID = "auto_full_sync"

scheduler = AsyncIOScheduler()


async def run_auto_sync():
    """Scheduled full sync; an overlapping run is skipped"""
    try:
        log.info("Starting scheduled full sync...")
        result = await build_engine().run_full_sync()
        errors = sum(len(branch.get("errors", [])) for branch in result.values())
        log.info(f"Scheduled full sync completed ({errors} errors)")
    except SyncInProgressError:
        log.warning("Scheduled full sync skipped: previous run still in progress")
    except Exception as e:
        log.error(f"Scheduled full sync error: {str(e)}")


def schedule_auto_sync(interval_minutes: int) -> Dict[str, Any]:
    """
    Run the full sync now and then every `interval_minutes`

    Calling again replaces the existing schedule. A non-positive interval
    removes it.
    """
    # Pending jobs of a stopped scheduler are not deduplicated by replace_existing
    if scheduler.get_job(AUTO_SYNC_JOB_ID):
        scheduler.remove_job(AUTO_SYNC_JOB_ID)

    if interval_minutes <= 0:
        log.info("Automatic sync disabled")
        return get_schedule()

    scheduler.add_job(
        run_auto_sync,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id=AUTO_SYNC_JOB_ID,
        name=f"Full sync (every {interval_minutes} min)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=utcnow(),
    )
    log.info(f"Automatic sync scheduled every {interval_minutes} minutes")
    return get_schedule()


def get_schedule() -> Dict[str, Any]:
    job = scheduler.get_job(AUTO_SYNC_JOB_ID)
    if not job:
        return {"enabled": False, "interval_minutes": None, "next_run_time": None}
    next_run = getattr(job, "next_run_time", None)
    return {
        "enabled": True,
        "interval_minutes": int(job.trigger.interval.total_seconds() // 60),
        "next_run_time": next_run.isoformat() if next_run else None,
    }


def start_scheduler(interval_minutes: Optional[int] = None):
    """Start the scheduler with the configured interval"""
    settings = get_settings()
    interval = settings.auto_sync_interval_minutes if interval_minutes is None else interval_minutes

    if not scheduler.running:
        scheduler.start()
    schedule_auto_sync(interval)
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        log.info("Scheduler stopped")
