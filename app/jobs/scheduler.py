"""
APScheduler Configuration

Background job scheduler for the earnings pipeline:
- Affiliate earnings sync every SYNC_INTERVAL_HOURS
- Daily analytics collection at DAILY_ANALYTICS_HOUR:00 for the previous day

Both jobs share one SyncContext, so their affiliate calls draw on the same
rate limiter and request cache.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.config import settings
from app.core.sync_context import SyncContext, create_sync_context
from app.jobs.earnings_jobs import run_earnings_sync_job, run_daily_analytics_job

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 300,
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)

# Shared by every scheduled run; created on first registration
_job_context: Optional[SyncContext] = None


def get_job_context() -> SyncContext:
    """Return the process-wide SyncContext for scheduled jobs."""
    global _job_context
    if _job_context is None:
        _job_context = create_sync_context()
    return _job_context


def register_jobs(context: Optional[SyncContext] = None):
    """Register (or replace) the earnings jobs on the scheduler."""
    global _job_context
    if context is not None:
        _job_context = context
    context = get_job_context()

    scheduler.add_job(
        run_earnings_sync_job,
        'interval',
        hours=settings.SYNC_INTERVAL_HOURS,
        id='earnings_sync',
        name='Affiliate Earnings Sync',
        kwargs={"context": context},
        replace_existing=True,
    )

    scheduler.add_job(
        run_daily_analytics_job,
        'cron',
        hour=settings.DAILY_ANALYTICS_HOUR,
        minute=0,
        id='daily_analytics',
        name='Daily Creator Analytics',
        kwargs={"context": context},
        replace_existing=True,
    )


def start_scheduler():
    """Start the background job scheduler."""
    if not settings.SCHEDULER_ENABLED:
        logger.info("Background job scheduler disabled")
        return

    if not scheduler.running:
        register_jobs()
        scheduler.start()
        logger.info(f"Background job scheduler started for {settings.APP_NAME} v{settings.APP_VERSION}")

        # Log all scheduled jobs
        jobs = scheduler.get_jobs()
        for job in jobs:
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


async def shutdown_scheduler():
    """Shutdown the scheduler gracefully and release the shared SyncContext."""
    global _job_context
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")

    if _job_context is not None:
        await _job_context.aclose()
        _job_context = None


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    status = []
    for job in jobs:
        # Pending jobs (scheduler not started) have no next_run_time yet
        next_run_time = getattr(job, 'next_run_time', None)
        status.append({
            'id': job.id,
            'name': job.name,
            'next_run_time': str(next_run_time) if next_run_time else None,
            'trigger': str(job.trigger),
        })
    return status
