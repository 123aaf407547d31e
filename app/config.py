from pydantic_settings import BaseSettings
from decimal import Decimal
from typing import Optional
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./earnings_ledger.db"

    # Database Connection Pool Settings (ignored for SQLite)
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Creator Earnings Ledger"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Impact.com Affiliate API
    IMPACT_ACCOUNT_SID: str = ""  # Media partner account SID
    IMPACT_AUTH_TOKEN: str = ""  # API auth token (HTTP Basic password)
    IMPACT_API_BASE_URL: str = "https://api.impact.com"
    IMPACT_PERFORMANCE_REPORT_ID: str = "mp_performance_by_subid"  # Report used for click counts
    IMPACT_REQUEST_TIMEOUT: float = 30.0  # Seconds per HTTP request

    # Tracking id derivation (used when a creator has no stored SubId1)
    TRACKING_ID_SECRET: str = "change-me-tracking-secret"
    TRACKING_ID_LENGTH: int = 16

    # Rate limiting against the affiliate API
    AFFILIATE_MAX_CALLS_PER_MINUTE: int = 10
    AFFILIATE_MAX_CALLS_PER_HOUR: int = 100
    AFFILIATE_MIN_CALL_INTERVAL_SECONDS: float = 3.0

    # Feed retry policy
    FEED_MAX_RETRIES: int = 3  # Retries for RateLimitError / NetworkError
    FEED_RETRY_BACKOFF_SECONDS: float = 2.0  # Base for exponential backoff

    # Request cache (TTL in seconds per data type)
    CACHE_TTL_EARNINGS: int = 300  # 5 minutes for live earnings
    CACHE_TTL_ANALYTICS: int = 600  # 10 minutes for analytics
    CACHE_TTL_SALES: int = 180  # 3 minutes for sales history
    CACHE_TTL_PERFORMANCE: int = 900  # 15 minutes for performance rollups
    CACHE_TTL_DEFAULT: int = 300
    CACHE_MAX_ENTRIES: int = 10000
    CACHE_MAX_ENTRY_BYTES: int = 1024 * 1024  # 1MB per cached result

    # Earnings sync
    SYNC_PAGE_SIZE: int = 100
    SYNC_WINDOW_DAYS: int = 30  # Default look-back when no start date given
    SYNC_PAGE_DELAY_SECONDS: float = 1.0  # Pause between page fetches
    SYNC_ACTION_STATUS: Optional[str] = None  # e.g. "APPROVED"; None fetches all statuses
    SYNC_ACTION_TYPE: Optional[str] = "SALE"
    SYNC_INTERVAL_HOURS: int = 6

    # Daily analytics / backfill
    BACKFILL_BATCH_SIZE: int = 2  # Creators per batch
    BACKFILL_BATCH_DELAY_SECONDS: float = 5.0  # Mandatory pause between batches
    BACKFILL_DAY_DELAY_SECONDS: float = 1.0  # Pause between external day fetches
    BACKFILL_DEFAULT_DAYS: int = 90
    BACKFILL_REFETCH_FALLBACK_DAYS: bool = True  # Treat INTERNAL_FALLBACK rows as gaps
    DAILY_ANALYTICS_HOUR: int = 2  # Nightly collection at 02:00
    DAILY_ANALYTICS_PAGE_SIZE: int = 1000

    # Commission business rules
    DEFAULT_CREATOR_COMMISSION_RATE: int = 70
    REFERRAL_BONUS_PERCENTAGE: int = 10
    REFERRAL_DURATION_MONTHS: int = 6
    MINIMUM_PAYOUT: Decimal = Decimal("50.00")

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
