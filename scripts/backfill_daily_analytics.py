"""
Backfill DailyAnalytics for a date range.

Only days without an affiliate-sourced row are collected, so the script can
be re-run after an interruption.

Usage:
    python scripts/backfill_daily_analytics.py --days 90
    python scripts/backfill_daily_analytics.py --start 2025-01-01 --end 2025-03-31
    python scripts/backfill_daily_analytics.py --days 30 --creator <uuid>
"""
import argparse
import asyncio
import json
import logging
import uuid
from datetime import date, timedelta

from app.config import settings
from app.core.dates import yesterday
from app.core.sync_context import create_sync_context
from app.database import get_db_session, init_db
from app.services.earnings_admin_service import EarningsAdminService


async def main(args: argparse.Namespace) -> int:
    end = args.end or yesterday()
    start = args.start or end - timedelta(days=args.days - 1)

    await init_db()
    context = create_sync_context()
    try:
        async with get_db_session() as db:
            summary = await EarningsAdminService(db, context).backfill_historical_data(
                start, end, args.creator
            )
    finally:
        await context.aclose()

    print(json.dumps(summary, indent=2, default=str))
    return 1 if summary["errors"] else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Backfill daily creator analytics")
    parser.add_argument("--start", type=date.fromisoformat, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, help="End date (default: yesterday)")
    parser.add_argument("--days", type=int, default=settings.BACKFILL_DEFAULT_DAYS)
    parser.add_argument("--creator", type=uuid.UUID, help="Backfill a single creator")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(main(args)))
