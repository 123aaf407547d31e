"""
Run the affiliate earnings sync once.

Usage:
    python scripts/run_earnings_sync.py
    python scripts/run_earnings_sync.py --start 2025-01-01 --end 2025-01-31
    python scripts/run_earnings_sync.py --test-connection
"""
import argparse
import asyncio
import json
import logging
from datetime import date

from app.core.sync_context import create_sync_context
from app.database import get_db_session, init_db
from app.services.earnings_admin_service import EarningsAdminService


async def main(args: argparse.Namespace) -> int:
    await init_db()
    context = create_sync_context()
    try:
        if args.test_connection:
            result = await context.feed_client.test_connection()
            print(json.dumps(result, indent=2, default=str))
            return 0 if result["success"] else 1

        async with get_db_session() as db:
            result = await EarningsAdminService(db, context).trigger_sync(args.start, args.end)
        print(json.dumps(result, indent=2, default=str))
        return 0 if result["success"] else 1
    finally:
        await context.aclose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Sync affiliate earnings into the ledger")
    parser.add_argument("--start", type=date.fromisoformat, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, help="End date (YYYY-MM-DD)")
    parser.add_argument("--test-connection", action="store_true", help="Only verify API credentials")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(main(args)))
