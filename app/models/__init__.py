# Models module
from app.models.creator import Creator, Link
from app.models.earning import (
    Earning,
    EarningType,
    EarningStatus,
    EarningsSnapshot,
    EarningsReversal,
    ReferralEarning,
    ReferralStatus,
    SnapshotSource,
)
from app.models.daily_analytics import DailyAnalytics, DataSource

__all__ = [
    "Creator",
    "Link",
    "Earning",
    "EarningType",
    "EarningStatus",
    "EarningsSnapshot",
    "EarningsReversal",
    "ReferralEarning",
    "ReferralStatus",
    "SnapshotSource",
    "DailyAnalytics",
    "DataSource",
]
