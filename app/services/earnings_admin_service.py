"""
Earnings Admin Service

Operations exposed to the admin surface:
- trigger_sync: run the affiliate earnings sync on demand
- get_earnings_summary: read-only totals grouped by creator and status
- backfill_historical_data: fill DailyAnalytics gaps for a date range
"""
import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dates import day_bounds, utc_now
from app.core.exceptions import EarningsSyncError, ValidationError
from app.core.money import to_decimal
from app.models.creator import Creator
from app.models.earning import Earning, EarningStatus
from app.schemas.affiliate import DateRange
from app.services.commission_calculator import summarize_payouts

if TYPE_CHECKING:
    from app.core.sync_context import SyncContext

logger = logging.getLogger(__name__)


class EarningsAdminService:
    """Admin facade over sync, ledger summaries and backfill."""

    def __init__(self, db: AsyncSession, context: "SyncContext"):
        self.db = db
        self.context = context

    # ========================================================================
    # Sync
    # ========================================================================

    async def trigger_sync(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        service = self.context.sync_service(self.db)
        try:
            result = await service.run_sync(start_date, end_date)
        except EarningsSyncError as e:
            logger.error(f"Manual earnings sync failed: {e}")
            return {
                "success": False,
                "stats": {},
                "duration": 0,
                "errors": [str(e)],
            }

        return {
            "success": True,
            "stats": result.stats,
            "duration": result.duration_ms,
            "errors": result.errors,
            "degraded": result.degraded,
        }

    # ========================================================================
    # Summary
    # ========================================================================

    async def get_earnings_summary(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """Totals grouped by creator and status, largest first."""
        conditions = []
        if start_date:
            conditions.append(Earning.earned_at >= day_bounds(start_date)[0])
        if end_date:
            conditions.append(Earning.earned_at < day_bounds(end_date)[1])

        total_amount = func.coalesce(func.sum(Earning.amount), 0)
        result = await self.db.execute(
            select(
                Earning.creator_id,
                Creator.name,
                Creator.email,
                Earning.status,
                func.count(Earning.id),
                total_amount,
                func.coalesce(func.sum(Earning.gross_amount), 0),
                func.coalesce(func.sum(Earning.platform_amount), 0),
            )
            .join(Creator, Creator.id == Earning.creator_id)
            .where(*conditions)
            .group_by(Earning.creator_id, Creator.name, Creator.email, Earning.status)
            .order_by(total_amount.desc())
            .limit(limit)
        )

        groups = []
        totals_by_status: Dict[str, Decimal] = {}
        for creator_id, name, email, status, count, amount, gross, platform in result.all():
            amount = to_decimal(amount)
            groups.append({
                "creator_id": str(creator_id),
                "creator_name": name,
                "creator_email": email,
                "status": status,
                "count": count,
                "total_amount": amount,
                "gross_amount": to_decimal(gross),
                "platform_amount": to_decimal(platform),
            })
            totals_by_status[status] = totals_by_status.get(status, Decimal("0.00")) + amount

        payable = await self.db.execute(
            select(Earning).where(Earning.status != EarningStatus.CANCELLED.value, *conditions)
        )
        payouts = summarize_payouts(payable.scalars().all())

        return {
            "date_range": {
                "start": start_date.isoformat() if start_date else None,
                "end": end_date.isoformat() if end_date else None,
            },
            "groups": groups,
            "totals_by_status": totals_by_status,
            "payout_summary": {
                "total_creators": payouts.total_creators,
                "total_gross": payouts.total_gross,
                "total_creator_payouts": payouts.total_creator_payouts,
                "total_platform_revenue": payouts.total_platform_revenue,
                "eligible_creators": payouts.eligible_creators,
                "pending_amount": payouts.pending_amount,
                "minimum_payout": payouts.minimum_payout,
            },
            "generated_at": utc_now().isoformat(),
        }

    # ========================================================================
    # Backfill
    # ========================================================================

    async def backfill_historical_data(
        self,
        start_date: date,
        end_date: date,
        creator_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        DateRange(start_date, end_date)
        analytics = self.context.analytics_service(self.db)

        if creator_id:
            creator = await self.db.get(Creator, creator_id)
            if creator is None:
                raise ValidationError("Creator not found", {"creator_id": creator_id})
            creators = [creator]
        else:
            creators = await analytics.get_active_creators()

        logger.info(
            f"Historical backfill {start_date}..{end_date} for {len(creators)} creators"
        )
        summary = await analytics.backfill_creators(creators, start_date, end_date)
        summary["date_range"] = {"start": start_date.isoformat(), "end": end_date.isoformat()}
        return summary
