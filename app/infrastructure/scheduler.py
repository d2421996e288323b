"""
APScheduler setup with persistent job store for delivery retries.
"""

import logging
from datetime import datetime
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.triggers.date import DateTrigger

from app.config.settings import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def retry_job_id(attempt_id: str) -> str:
    return f"retry_{attempt_id}"


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler

    if scheduler is None:
        # Jobs live in SQLite so queued retries survive restarts
        jobstores = {
            'default': SQLAlchemyJobStore(url=settings.jobstore_url)
        }

        scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            timezone='UTC',
            job_defaults={
                'coalesce': True,
                'misfire_grace_time': None,  # Run late retries rather than drop them
            }
        )

    return scheduler


async def start_scheduler() -> None:
    """Start the scheduler."""
    sched = get_scheduler()
    if not sched.running:
        sched.start()
        logger.info("Scheduler started")


async def stop_scheduler() -> None:
    """Stop the scheduler gracefully."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")


async def schedule_delivery_retry(attempt_id: str, run_at: datetime) -> None:
    """
    Enqueue a retry for a delivery attempt.

    Args:
        attempt_id: The DeliveryAttempt's ID
        run_at: Naive UTC time the retry becomes due
    """
    sched = get_scheduler()
    job_id = retry_job_id(attempt_id)

    sched.add_job(
        run_delivery_retry,
        trigger=DateTrigger(run_date=run_at, timezone='UTC'),
        id=job_id,
        name=f"Delivery retry {attempt_id}",
        replace_existing=True,
        kwargs={'attempt_id': attempt_id}
    )
    logger.info(f"Scheduled {job_id} for {run_at}")


def list_jobs() -> List[dict]:
    """Describe queued jobs."""
    sched = get_scheduler()
    return [
        {
            "id": job.id,
            "name": job.name,
            "next_run": str(job.next_run_time) if job.next_run_time else None
        }
        for job in sched.get_jobs()
    ]


async def run_delivery_retry(attempt_id: str) -> None:
    """
    Execute a queued delivery retry.

    This function is called by the scheduler when the retry becomes due.
    """
    from app.infrastructure.database import DatabaseSession
    from app.usecases.delivery_tracker import DeliveryTracker

    logger.info(f"Running delivery retry for attempt {attempt_id}")

    try:
        async with DatabaseSession() as session:
            tracker = DeliveryTracker(session)
            await tracker.retry(attempt_id)
    except Exception as e:
        logger.exception(f"Error running delivery retry for {attempt_id}: {e}")
