"""APScheduler integration for FastAPI.

Runs the trading tick on a fixed interval.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backend.config import settings
from backend.utils.constants import INTERVAL_HOURS

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

TICK_JOB_ID = "trading_tick"


def _get_trigger(interval: str) -> IntervalTrigger:
    # Support arbitrary "<N>m" schedule intervals
    if interval.endswith("m") and interval[:-1].isdigit():
        return IntervalTrigger(minutes=int(interval[:-1]))
    hours = INTERVAL_HOURS.get(interval)
    if hours is None:
        raise ValueError(f"Unsupported tick interval: {interval}")
    if hours < 1:
        return IntervalTrigger(minutes=int(hours * 60))
    return IntervalTrigger(hours=hours)


def add_tick_job(interval: str):
    """Add or replace the tick job."""
    from backend.engine.tick import run_scheduled_tick

    scheduler.add_job(
        run_scheduled_tick,
        trigger=_get_trigger(interval),
        id=TICK_JOB_ID,
        name="Trading tick",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )
    logger.info(f"Scheduled trading tick every {interval}")


def start_scheduler():
    """Start the scheduler with the tick job."""
    add_tick_job(settings.tick_interval)
    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
