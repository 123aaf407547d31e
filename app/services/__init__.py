# Services module
from app.services.commission_calculator import split_commission, calculate_referral_bonus
from app.services.rate_limiter import AffiliateRateLimiter
from app.services.request_cache import RequestCoalescer
from app.services.affiliate_feed_service import AffiliateFeedClient
from app.services.creator_identity_service import CreatorIdentityResolver
from app.services.ledger_writer import LedgerWriter

# Pipelines
from app.services.earnings_sync_service import EarningsSyncService
from app.services.daily_analytics_service import DailyAnalyticsService
from app.services.conversion_webhook_service import ConversionWebhookService
from app.services.earnings_admin_service import EarningsAdminService

__all__ = [
    "split_commission",
    "calculate_referral_bonus",
    "AffiliateRateLimiter",
    "RequestCoalescer",
    "AffiliateFeedClient",
    "CreatorIdentityResolver",
    "LedgerWriter",
    # Pipelines
    "EarningsSyncService",
    "DailyAnalyticsService",
    "ConversionWebhookService",
    "EarningsAdminService",
]
