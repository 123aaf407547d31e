"""
Daily Analytics Service

Per-creator, per-day rollups of sales, commission, clicks and conversions.

Primary path:  affiliate Actions for the day, filtered to the creator's
               tracking id, written through the LedgerWriter, then rolled up.
Fallback path: derived from our own Earning and Link rows when the affiliate
               API is unconfigured or failing. Marked INTERNAL_FALLBACK.

Also drives historical backfill (gap detection, batched creators) and the
historical analytics view used by the admin dashboard.
"""
import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import rollback_and_refresh
from app.core.dates import day_bounds, ensure_utc, iter_days, utc_now, yesterday
from app.core.exceptions import EarningsSyncError
from app.core.money import to_decimal
from app.models.creator import Creator, Link
from app.models.daily_analytics import DailyAnalytics, DataSource
from app.models.earning import Earning, EarningStatus, EarningType, SnapshotSource
from app.schemas.affiliate import ActionFilters, DateRange, ExternalTransaction
from app.services.affiliate_feed_service import AffiliateFeedClient
from app.services.commission_calculator import map_external_status, split_commission
from app.services.creator_identity_service import CreatorIdentityResolver
from app.services.ledger_writer import LedgerWriter

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
TOP_CREATORS_LIMIT = 10


@dataclass
class DayMetrics:
    commissionable_sales: Decimal = ZERO
    commission_earned: Decimal = ZERO
    gross_commission_earned: Decimal = ZERO
    clicks: int = 0
    conversions: int = 0
    records_processed: int = 0
    data_source: DataSource = DataSource.EXTERNAL_API


@dataclass
class BackfillResult:
    records_created: int = 0
    api_calls: int = 0
    errors: List[str] = field(default_factory=list)
    skipped_days: int = 0
    fallback_days: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records_created": self.records_created,
            "api_calls": self.api_calls,
            "errors": list(self.errors),
            "skipped_days": self.skipped_days,
            "fallback_days": self.fallback_days,
        }


class DailyAnalyticsService:
    """Collects and serves DailyAnalytics rows."""

    def __init__(
        self,
        db: AsyncSession,
        feed_client: Optional[AffiliateFeedClient] = None,
        resolver: Optional[CreatorIdentityResolver] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.feed_client = feed_client
        self.resolver = resolver or CreatorIdentityResolver()
        self.ledger = LedgerWriter(db)
        self._sleep = sleep

    @property
    def feed_available(self) -> bool:
        return self.feed_client is not None and self.feed_client.is_configured

    # ========================================================================
    # Single day
    # ========================================================================

    async def collect_day(
        self,
        creator: Creator,
        day: date,
        source: SnapshotSource = SnapshotSource.DAILY_SYNC,
    ) -> DailyAnalytics:
        """
        Collect and store one creator's metrics for one day.

        Falls back to internal data on any affiliate error and does not raise.
        """
        metrics = None
        if self.feed_available:
            try:
                metrics = await self._collect_from_feed(creator, day, source)
            except EarningsSyncError as e:
                logger.warning(
                    f"Affiliate data unavailable for creator {creator.id} on {day}, "
                    f"using internal fallback: {e}"
                )
                await rollback_and_refresh(self.db, creator)

        if metrics is None:
            metrics = await self._collect_from_internal(creator, day)

        return await self._store(creator, day, metrics)

    async def _collect_from_feed(
        self,
        creator: Creator,
        day: date,
        source: SnapshotSource,
    ) -> DayMetrics:
        tracking_id = self.resolver.resolve_tracking_id(creator).tracking_id
        filters = ActionFilters(action_type=settings.SYNC_ACTION_TYPE, tracking_id=tracking_id)
        date_range = DateRange(day, day)

        actions: List[ExternalTransaction] = []
        page = 1
        while True:
            feed_page = await self.feed_client.fetch_actions(
                date_range, filters, page=page, page_size=settings.DAILY_ANALYTICS_PAGE_SIZE
            )
            actions.extend(feed_page.items)
            if feed_page.is_last:
                break
            page += 1

        # Degraded pages are not date-bounded; enforce the day here
        actions = [tx for tx in actions if ensure_utc(tx.event_timestamp).date() == day]
        mine = self.resolver.filter_transactions_for_creator(actions, tracking_id, creator.id)
        commissionable = self.resolver.filter_commissionable(mine)

        metrics = DayMetrics(records_processed=len(mine))
        for tx in commissionable:
            creator_amount = await self._record(tx, creator, source)
            if map_external_status(tx.raw_status) == EarningStatus.CANCELLED:
                continue
            metrics.conversions += 1
            metrics.gross_commission_earned += tx.gross_amount
            metrics.commission_earned += creator_amount
            metrics.commissionable_sales += tx.sale_amount or ZERO

        try:
            metrics.clicks = await self.feed_client.fetch_subid_clicks(day, tracking_id)
        except EarningsSyncError as e:
            logger.warning(f"Click report unavailable for creator {creator.id} on {day}: {e}")
            metrics.clicks = await self._link_clicks(creator.id, day)

        return metrics

    async def _record(self, tx: ExternalTransaction, creator: Creator, source: SnapshotSource) -> Decimal:
        """Write one action to the ledger; returns the creator amount."""
        try:
            earning, _ = await self.ledger.upsert_earning(tx, creator, source)
            return to_decimal(earning.amount)
        except (EarningsSyncError, SQLAlchemyError) as e:
            await rollback_and_refresh(self.db, creator)
            logger.error(f"Failed to record action {tx.external_id} for creator {creator.id}: {e}")
            return split_commission(tx.gross_amount, creator.commission_rate).creator_amount

    async def _link_clicks(self, creator_id: uuid.UUID, day: date) -> int:
        start, end = day_bounds(day)
        result = await self.db.execute(
            select(func.coalesce(func.sum(Link.clicks), 0))
            .where(Link.creator_id == creator_id, Link.created_at >= start, Link.created_at < end)
        )
        return int(result.scalar() or 0)

    async def _collect_from_internal(self, creator: Creator, day: date) -> DayMetrics:
        metrics = DayMetrics(data_source=DataSource.INTERNAL_FALLBACK)
        start, end = day_bounds(day)
        try:
            earnings_result = await self.db.execute(
                select(
                    func.count(Earning.id),
                    func.coalesce(func.sum(Earning.amount), 0),
                    func.coalesce(func.sum(Earning.gross_amount), 0),
                ).where(
                    Earning.creator_id == creator.id,
                    Earning.type == EarningType.COMMISSION.value,
                    Earning.status != EarningStatus.CANCELLED.value,
                    Earning.earned_at >= start,
                    Earning.earned_at < end,
                )
            )
            count, amount, gross = earnings_result.one()

            links_result = await self.db.execute(
                select(
                    func.count(Link.id),
                    func.coalesce(func.sum(Link.clicks), 0),
                    func.coalesce(func.sum(Link.revenue), 0),
                ).where(
                    Link.creator_id == creator.id,
                    Link.created_at >= start,
                    Link.created_at < end,
                )
            )
            link_count, clicks, revenue = links_result.one()
        except SQLAlchemyError as e:
            logger.error(f"Internal fallback query failed for creator {creator.id} on {day}: {e}")
            await rollback_and_refresh(self.db, creator)
            return metrics

        metrics.conversions = int(count or 0)
        metrics.commission_earned = to_decimal(amount or 0)
        metrics.gross_commission_earned = to_decimal(gross or 0)
        metrics.clicks = int(clicks or 0)
        metrics.commissionable_sales = to_decimal(revenue or 0)
        metrics.records_processed = int(count or 0) + int(link_count or 0)
        return metrics

    async def _store(self, creator: Creator, day: date, metrics: DayMetrics) -> DailyAnalytics:
        """Upsert by (creator_id, date)."""
        result = await self.db.execute(
            select(DailyAnalytics).where(
                DailyAnalytics.creator_id == creator.id,
                DailyAnalytics.date == day,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = DailyAnalytics(id=uuid.uuid4(), creator_id=creator.id, date=day)
            self.db.add(row)

        row.commissionable_sales = metrics.commissionable_sales
        row.commission_earned = metrics.commission_earned
        row.gross_commission_earned = metrics.gross_commission_earned
        row.clicks = metrics.clicks
        row.conversions = metrics.conversions
        row.applied_commission_rate = creator.commission_rate
        row.data_source = metrics.data_source.value
        row.records_processed = metrics.records_processed
        row.last_sync_at = utc_now()

        await self.db.commit()
        logger.info(
            f"Daily analytics for creator {creator.id} on {day}: "
            f"{metrics.commission_earned} from {metrics.conversions} conversions "
            f"({metrics.data_source.value})"
        )
        return row

    # ========================================================================
    # Backfill
    # ========================================================================

    async def _covered_days(self, creator_id: uuid.UUID, start: date, end: date) -> set:
        result = await self.db.execute(
            select(DailyAnalytics.date, DailyAnalytics.data_source).where(
                DailyAnalytics.creator_id == creator_id,
                DailyAnalytics.date >= start,
                DailyAnalytics.date <= end,
            )
        )
        covered = set()
        for row_date, data_source in result.all():
            if data_source == DataSource.INTERNAL_FALLBACK.value and settings.BACKFILL_REFETCH_FALLBACK_DAYS:
                continue
            covered.add(row_date)
        return covered

    async def backfill_range(self, creator: Creator, start: date, end: date) -> BackfillResult:
        """
        Fill missing days for one creator. Days already collected from the
        affiliate API are skipped, so an interrupted backfill can be re-run.
        """
        DateRange(start, end)
        result = BackfillResult()
        requests_before = self.feed_client.request_count if self.feed_client else 0

        covered = await self._covered_days(creator.id, start, end)
        missing = [d for d in iter_days(start, end) if d not in covered]
        result.skipped_days = (end - start).days + 1 - len(missing)
        logger.info(
            f"Backfill creator {creator.id} {start}..{end}: "
            f"{len(missing)} missing days, {result.skipped_days} already present"
        )

        for index, day in enumerate(missing):
            try:
                row = await self.collect_day(creator, day, source=SnapshotSource.BACKFILL)
            except (EarningsSyncError, SQLAlchemyError) as e:
                await rollback_and_refresh(self.db, creator)
                result.errors.append(f"{day.isoformat()}: {e}")
                logger.error(f"Backfill failed for creator {creator.id} on {day}: {e}")
                continue

            result.records_created += 1
            if row.data_source == DataSource.INTERNAL_FALLBACK.value:
                result.fallback_days += 1

            if self.feed_available and index < len(missing) - 1:
                await self._sleep(settings.BACKFILL_DAY_DELAY_SECONDS)

        if self.feed_client:
            result.api_calls = self.feed_client.request_count - requests_before
        return result

    async def backfill_creators(
        self,
        creators: Sequence[Creator],
        start: date,
        end: date,
        batch_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Backfill several creators in fixed-size batches with a pause between
        batches. Creators within a batch run one after another.
        """
        batch_size = batch_size or settings.BACKFILL_BATCH_SIZE
        summary: Dict[str, Any] = {
            "creators_processed": 0,
            "records_created": 0,
            "api_calls": 0,
            "errors": [],
            "results": {},
        }

        # Ids, not instances: a rollback expires every loaded creator
        creator_ids = [creator.id for creator in creators]
        batches = [creator_ids[i:i + batch_size] for i in range(0, len(creator_ids), batch_size)]
        for batch_number, batch in enumerate(batches, start=1):
            logger.info(f"Backfill batch {batch_number}/{len(batches)} ({len(batch)} creators)")
            for creator_id in batch:
                try:
                    creator = await self.db.get(Creator, creator_id)
                    creator_result = await self.backfill_range(creator, start, end)
                except (EarningsSyncError, SQLAlchemyError) as e:
                    await self.db.rollback()
                    summary["errors"].append(f"{creator_id}: {e}")
                    continue
                summary["creators_processed"] += 1
                summary["records_created"] += creator_result.records_created
                summary["api_calls"] += creator_result.api_calls
                summary["errors"].extend(f"{creator_id} {err}" for err in creator_result.errors)
                summary["results"][str(creator_id)] = creator_result.to_dict()

            if batch_number < len(batches):
                await self._sleep(settings.BACKFILL_BATCH_DELAY_SECONDS)

        return summary

    # ========================================================================
    # Nightly job
    # ========================================================================

    async def get_active_creators(self) -> List[Creator]:
        result = await self.db.execute(
            select(Creator).where(Creator.is_active.is_(True)).order_by(Creator.created_at)
        )
        return list(result.scalars().all())

    async def collect_all_creators(self, day: Optional[date] = None) -> Dict[str, Any]:
        """Collect one day (default yesterday) for every active creator."""
        day = day or yesterday()
        creator_ids = [creator.id for creator in await self.get_active_creators()]
        summary: Dict[str, Any] = {
            "date": day.isoformat(),
            "total_creators": len(creator_ids),
            "successful": 0,
            "failed": 0,
            "fallback": 0,
            "total_commission": ZERO,
            "total_clicks": 0,
            "total_conversions": 0,
            "errors": [],
        }

        for creator_id in creator_ids:
            try:
                creator = await self.db.get(Creator, creator_id)
                row = await self.collect_day(creator, day)
            except SQLAlchemyError as e:
                await self.db.rollback()
                summary["failed"] += 1
                summary["errors"].append(f"{creator_id}: {e}")
                logger.error(f"Daily analytics failed for creator {creator_id}: {e}")
                continue
            summary["successful"] += 1
            if row.data_source == DataSource.INTERNAL_FALLBACK.value:
                summary["fallback"] += 1
            summary["total_commission"] += to_decimal(row.commission_earned)
            summary["total_clicks"] += row.clicks
            summary["total_conversions"] += row.conversions

        logger.info(
            f"Daily analytics for {day}: {summary['successful']}/{len(creator_ids)} creators, "
            f"{summary['fallback']} from fallback"
        )
        return summary

    # ========================================================================
    # Historical view
    # ========================================================================

    async def get_historical_analytics(
        self,
        start: date,
        end: date,
        creator_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """Chart series, summary and top creators for a date range."""
        DateRange(start, end)
        query = select(DailyAnalytics).where(DailyAnalytics.date >= start, DailyAnalytics.date <= end)
        if creator_id:
            query = query.where(DailyAnalytics.creator_id == creator_id)
        result = await self.db.execute(query.order_by(DailyAnalytics.date))

        records = [
            {
                "creator_id": row.creator_id,
                "date": row.date,
                "commissionable_sales": to_decimal(row.commissionable_sales),
                "commission_earned": to_decimal(row.commission_earned),
                "clicks": row.clicks,
                "conversions": row.conversions,
            }
            for row in result.scalars().all()
        ]
        is_fallback = not records
        if is_fallback:
            records = await self._internal_daily_records(start, end, creator_id)

        names = await self._creator_names({r["creator_id"] for r in records})
        return {
            "date_range": {"start": start.isoformat(), "end": end.isoformat()},
            "chart_data": _aggregate_by_date(records),
            "summary": _summary_metrics(records),
            "top_creators": _top_creators(records, names),
            "total_records": len(records),
            "fallback": is_fallback,
        }

    async def _internal_daily_records(
        self,
        start: date,
        end: date,
        creator_id: Optional[uuid.UUID],
    ) -> List[Dict[str, Any]]:
        range_start, _ = day_bounds(start)
        _, range_end = day_bounds(end)
        grouped: Dict[tuple, Dict[str, Any]] = {}

        def bucket(cid, day):
            key = (cid, day)
            if key not in grouped:
                grouped[key] = {
                    "creator_id": cid,
                    "date": day,
                    "commissionable_sales": ZERO,
                    "commission_earned": ZERO,
                    "clicks": 0,
                    "conversions": 0,
                }
            return grouped[key]

        link_query = select(Link).where(Link.created_at >= range_start, Link.created_at < range_end)
        earning_query = select(Earning).where(
            Earning.earned_at >= range_start,
            Earning.earned_at < range_end,
            Earning.type == EarningType.COMMISSION.value,
            Earning.status != EarningStatus.CANCELLED.value,
        )
        if creator_id:
            link_query = link_query.where(Link.creator_id == creator_id)
            earning_query = earning_query.where(Earning.creator_id == creator_id)

        for link in (await self.db.execute(link_query)).scalars().all():
            record = bucket(link.creator_id, ensure_utc(link.created_at).date())
            record["clicks"] += link.clicks or 0
            record["commissionable_sales"] += to_decimal(link.revenue or 0)

        for earning in (await self.db.execute(earning_query)).scalars().all():
            record = bucket(earning.creator_id, ensure_utc(earning.earned_at).date())
            record["commission_earned"] += to_decimal(earning.amount)
            record["conversions"] += 1

        return sorted(grouped.values(), key=lambda r: r["date"])

    async def _creator_names(self, creator_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Dict[str, str]]:
        creator_ids = list(creator_ids)
        if not creator_ids:
            return {}
        result = await self.db.execute(
            select(Creator.id, Creator.name, Creator.email).where(Creator.id.in_(creator_ids))
        )
        return {cid: {"name": name, "email": email} for cid, name, email in result.all()}


def _rate(numerator: int, denominator: int) -> float:
    return round(numerator / denominator * 100, 2) if denominator else 0.0


def _aggregate_by_date(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    by_date: Dict[date, Dict[str, Any]] = {}
    for record in records:
        point = by_date.setdefault(record["date"], {
            "date": record["date"].isoformat(),
            "commissionable_sales": ZERO,
            "commission_earned": ZERO,
            "clicks": 0,
            "conversions": 0,
            "creators": 0,
        })
        point["commissionable_sales"] += record["commissionable_sales"]
        point["commission_earned"] += record["commission_earned"]
        point["clicks"] += record["clicks"]
        point["conversions"] += record["conversions"]
        point["creators"] += 1
    return [by_date[d] for d in sorted(by_date)]


def _summary_metrics(records: List[Dict[str, Any]]) -> Dict[str, Any]:
    total_sales = sum((r["commissionable_sales"] for r in records), ZERO)
    total_commissions = sum((r["commission_earned"] for r in records), ZERO)
    total_clicks = sum(r["clicks"] for r in records)
    total_conversions = sum(r["conversions"] for r in records)
    return {
        "total_sales": total_sales,
        "total_commissions": total_commissions,
        "total_clicks": total_clicks,
        "total_conversions": total_conversions,
        "average_order_value": to_decimal(total_sales / total_conversions) if total_conversions else ZERO,
        "conversion_rate": _rate(total_conversions, total_clicks),
        "average_daily_commissions": to_decimal(total_commissions / len(records)) if records else ZERO,
    }


def _top_creators(
    records: List[Dict[str, Any]],
    names: Dict[uuid.UUID, Dict[str, str]],
) -> List[Dict[str, Any]]:
    per_creator: Dict[uuid.UUID, Dict[str, Any]] = defaultdict(lambda: {
        "total_commissions": ZERO,
        "total_sales": ZERO,
        "total_clicks": 0,
        "total_conversions": 0,
        "days": 0,
    })
    for record in records:
        totals = per_creator[record["creator_id"]]
        totals["total_commissions"] += record["commission_earned"]
        totals["total_sales"] += record["commissionable_sales"]
        totals["total_clicks"] += record["clicks"]
        totals["total_conversions"] += record["conversions"]
        totals["days"] += 1

    ranked = sorted(per_creator.items(), key=lambda item: item[1]["total_commissions"], reverse=True)
    top = []
    for creator_id, totals in ranked[:TOP_CREATORS_LIMIT]:
        top.append({
            "creator_id": str(creator_id),
            "creator": names.get(creator_id, {}),
            **totals,
            "average_daily_commissions": to_decimal(totals["total_commissions"] / totals["days"]),
            "conversion_rate": _rate(totals["total_conversions"], totals["total_clicks"]),
        })
    return top
