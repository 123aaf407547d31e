"""
Explicit wiring for the affiliate pipeline.

One SyncContext owns the rate limiter, request cache and feed client that
every sync, backfill and analytics run in the process should share. Build it
once at startup (or per script run) and pass it down; nothing here is a
module-level singleton.

Usage:
    context = create_sync_context()
    try:
        async with get_db_session() as db:
            result = await context.sync_service(db).run_sync()
    finally:
        await context.aclose()
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as default_settings
from app.services.affiliate_feed_service import AffiliateFeedClient
from app.services.creator_identity_service import CreatorIdentityResolver
from app.services.daily_analytics_service import DailyAnalyticsService
from app.services.earnings_sync_service import EarningsSyncService
from app.services.rate_limiter import AffiliateRateLimiter
from app.services.request_cache import RequestCoalescer


@dataclass
class SyncContext:
    settings: Settings
    rate_limiter: AffiliateRateLimiter
    cache: RequestCoalescer
    feed_client: AffiliateFeedClient
    resolver: CreatorIdentityResolver
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def sync_service(self, db: AsyncSession) -> EarningsSyncService:
        return EarningsSyncService(db, self.feed_client, self.resolver, sleep=self.sleep)

    def analytics_service(self, db: AsyncSession) -> DailyAnalyticsService:
        return DailyAnalyticsService(db, self.feed_client, self.resolver, sleep=self.sleep)

    async def aclose(self) -> None:
        await self.feed_client.aclose()


def create_sync_context(
    app_settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SyncContext:
    """Build the shared limiter, cache and feed client from settings."""
    app_settings = app_settings or default_settings
    rate_limiter = AffiliateRateLimiter(
        max_per_minute=app_settings.AFFILIATE_MAX_CALLS_PER_MINUTE,
        max_per_hour=app_settings.AFFILIATE_MAX_CALLS_PER_HOUR,
        min_interval=app_settings.AFFILIATE_MIN_CALL_INTERVAL_SECONDS,
        sleep=sleep,
    )
    cache = RequestCoalescer(
        max_entries=app_settings.CACHE_MAX_ENTRIES,
        max_entry_bytes=app_settings.CACHE_MAX_ENTRY_BYTES,
    )
    feed_client = AffiliateFeedClient(
        rate_limiter,
        cache,
        http_client=http_client,
        account_sid=app_settings.IMPACT_ACCOUNT_SID,
        auth_token=app_settings.IMPACT_AUTH_TOKEN,
        base_url=app_settings.IMPACT_API_BASE_URL,
        max_retries=app_settings.FEED_MAX_RETRIES,
        backoff_seconds=app_settings.FEED_RETRY_BACKOFF_SECONDS,
        sleep=sleep,
    )
    resolver = CreatorIdentityResolver(
        secret=app_settings.TRACKING_ID_SECRET,
        length=app_settings.TRACKING_ID_LENGTH,
    )
    return SyncContext(
        settings=app_settings,
        rate_limiter=rate_limiter,
        cache=cache,
        feed_client=feed_client,
        resolver=resolver,
        sleep=sleep,
    )
