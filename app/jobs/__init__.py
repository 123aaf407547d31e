"""
Background Jobs Module

Handles scheduled tasks for:
- Affiliate earnings sync
- Daily creator analytics
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status
from app.jobs.earnings_jobs import run_earnings_sync_job, run_daily_analytics_job

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
    "run_earnings_sync_job",
    "run_daily_analytics_job",
]
