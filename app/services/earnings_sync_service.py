"""
Earnings Sync Service

Pulls affiliate Actions for a date window, attributes each one to a creator
by tracking id and records it through the LedgerWriter.

Per-transaction failures are counted and skipped. Credential and database
connection failures abort the run. Pages that cannot be parsed are skipped;
retryable errors that outlast the retry budget stop paging and are reported
in the result.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.dates import ensure_utc, utc_now
from app.core.exceptions import (
    AuthError,
    EarningsSyncError,
    MalformedResponseError,
    StorageUnavailableError,
)
from app.models.creator import Creator
from app.models.earning import SnapshotSource
from app.schemas.affiliate import ActionFilters, DateRange, ExternalTransaction, FeedPage
from app.services.affiliate_feed_service import AffiliateFeedClient
from app.services.creator_identity_service import CreatorIdentityResolver
from app.services.ledger_writer import LedgerWriter, WriteAction

logger = logging.getLogger(__name__)


def _is_storage_failure(error: SQLAlchemyError) -> bool:
    """Connection-level failures; constraint violations are per-record."""
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


@dataclass
class SyncResult:
    stats: Dict[str, int] = field(default_factory=lambda: {
        "fetched": 0,
        "created": 0,
        "updated": 0,
        "unchanged": 0,
        "skipped": 0,
        "errors": 0,
    })
    duration_ms: int = 0
    errors: List[str] = field(default_factory=list)
    degraded: bool = False
    pages: int = 0

    def add_error(self, message: str) -> None:
        self.stats["errors"] += 1
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stats": dict(self.stats),
            "duration_ms": self.duration_ms,
            "errors": list(self.errors),
            "degraded": self.degraded,
            "pages": self.pages,
        }


class EarningsSyncService:
    """Service for pulling affiliate earnings into the ledger."""

    def __init__(
        self,
        db: AsyncSession,
        feed_client: AffiliateFeedClient,
        resolver: Optional[CreatorIdentityResolver] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.feed_client = feed_client
        self.resolver = resolver or CreatorIdentityResolver()
        self.ledger = LedgerWriter(db)
        self._sleep = sleep

    def default_date_range(self) -> DateRange:
        today = utc_now().date()
        return DateRange(today - timedelta(days=settings.SYNC_WINDOW_DAYS), today)

    async def _tracking_index(self) -> Dict[str, uuid.UUID]:
        """tracking id -> creator id for all active creators."""
        result = await self.db.execute(select(Creator).where(Creator.is_active.is_(True)))
        index = self.resolver.build_tracking_index(result.scalars().all())
        return {tracking_id: creator.id for tracking_id, creator in index.items()}

    async def run_sync(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> SyncResult:
        """
        Sync affiliate earnings for [start_date, end_date].

        Defaults to the last SYNC_WINDOW_DAYS days. Raises ConfigurationError
        before any work if credentials are missing, and AuthError (with page
        and date range context) if they are rejected.
        """
        self.feed_client.ensure_configured()
        started = time.monotonic()

        default_range = self.default_date_range()
        date_range = DateRange(start_date or default_range.start, end_date or default_range.end)
        filters = ActionFilters(
            status=settings.SYNC_ACTION_STATUS,
            action_type=settings.SYNC_ACTION_TYPE,
        )
        index = await self._tracking_index()
        result = SyncResult()
        logger.info(
            f"Starting earnings sync {date_range.start}..{date_range.end} "
            f"for {len(index)} tracked creators"
        )

        page = 1
        total_pages: Optional[int] = None
        while True:
            try:
                feed_page = await self.feed_client.fetch_actions(
                    date_range, filters, page=page, page_size=settings.SYNC_PAGE_SIZE
                )
            except AuthError as e:
                raise AuthError(
                    e.message,
                    {**e.context, "page": page, "date_range": date_range.as_dict()},
                ) from e
            except MalformedResponseError as e:
                result.add_error(f"page {page}: {e}")
                if total_pages is None or page >= total_pages:
                    break
                logger.warning(f"Skipping malformed page {page}")
                page += 1
                continue
            except EarningsSyncError as e:
                result.add_error(f"page {page}: {e}")
                logger.error(f"Earnings sync stopped at page {page}: {e}")
                break

            result.pages += 1
            total_pages = feed_page.total_pages
            await self._process_page(feed_page, date_range, index, result)

            if feed_page.is_last:
                break
            page += 1
            await self._sleep(settings.SYNC_PAGE_DELAY_SECONDS)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Earnings sync finished in {result.duration_ms}ms: {result.stats}")
        return result

    async def _process_page(
        self,
        feed_page: FeedPage,
        date_range: DateRange,
        index: Dict[str, uuid.UUID],
        result: SyncResult,
    ) -> None:
        result.stats["fetched"] += len(feed_page.items) + len(feed_page.invalid_items)
        for invalid in feed_page.invalid_items:
            result.stats["skipped"] += 1
            result.errors.append(f"page {feed_page.page}: {invalid}")

        items = feed_page.items
        if feed_page.degraded:
            result.degraded = True
            items = [
                tx for tx in items
                if date_range.start <= ensure_utc(tx.event_timestamp).date() <= date_range.end
            ]
            result.stats["skipped"] += len(feed_page.items) - len(items)

        for tx in items:
            await self._process_transaction(tx, feed_page.page, date_range, index, result)

    async def _process_transaction(
        self,
        tx: ExternalTransaction,
        page: int,
        date_range: DateRange,
        index: Dict[str, uuid.UUID],
        result: SyncResult,
    ) -> None:
        creator_id = index.get(tx.tracking_id.strip()) if tx.has_valid_tracking_id else None
        if creator_id is None or tx.gross_amount <= 0:
            result.stats["skipped"] += 1
            return

        try:
            creator = await self.db.get(Creator, creator_id)
            _, action = await self.ledger.upsert_earning(tx, creator, SnapshotSource.DAILY_SYNC)
        except (EarningsSyncError, SQLAlchemyError) as e:
            if isinstance(e, SQLAlchemyError) and _is_storage_failure(e):
                logger.error(f"Database unavailable while syncing {tx.external_id}: {e}")
                raise StorageUnavailableError(
                    "Database unavailable during earnings sync",
                    {
                        "external_id": tx.external_id,
                        "page": page,
                        "date_range": date_range.as_dict(),
                    },
                ) from e
            await self.db.rollback()
            result.add_error(f"transaction {tx.external_id}: {e}")
            logger.error(f"Failed to sync transaction {tx.external_id}: {e}")
            return

        if action == WriteAction.CREATED:
            result.stats["created"] += 1
        elif action == WriteAction.UPDATED:
            result.stats["updated"] += 1
        else:
            result.stats["unchanged"] += 1
