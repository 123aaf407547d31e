"""
Earnings background jobs.

- run_earnings_sync_job: pull affiliate Actions into the earnings ledger
- run_daily_analytics_job: collect yesterday's DailyAnalytics for all creators

Each run opens its own session. Scheduled runs receive the scheduler's shared
SyncContext; a direct call without one builds and closes its own. Failures
are logged and re-raised so APScheduler records the job error.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from app.core.sync_context import SyncContext, create_sync_context

logger = logging.getLogger(__name__)


async def run_earnings_sync_job(context: Optional[SyncContext] = None) -> Dict[str, Any]:
    """Sync the default window of affiliate earnings."""
    from app.database import get_db_session

    logger.info("Starting scheduled earnings sync...")
    start_time = datetime.now(timezone.utc)
    owns_context = context is None
    context = context or create_sync_context()

    try:
        async with get_db_session() as session:
            result = await context.sync_service(session).run_sync()

        elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info(
            f"Scheduled earnings sync completed in {elapsed:.2f}s: "
            f"{result.stats['created']} created, {result.stats['updated']} updated, "
            f"{result.stats['errors']} errors"
        )
        return result.to_dict()

    except Exception as e:
        logger.error(f"Scheduled earnings sync failed: {e}")
        raise
    finally:
        if owns_context:
            await context.aclose()


async def run_daily_analytics_job(
    day: Optional[date] = None,
    context: Optional[SyncContext] = None,
) -> Dict[str, Any]:
    """Collect one day (default yesterday) of analytics for every active creator."""
    from app.database import get_db_session

    logger.info("Starting daily analytics collection...")
    owns_context = context is None
    context = context or create_sync_context()

    try:
        async with get_db_session() as session:
            return await context.analytics_service(session).collect_all_creators(day)

    except Exception as e:
        logger.error(f"Daily analytics collection failed: {e}")
        raise
    finally:
        if owns_context:
            await context.aclose()
