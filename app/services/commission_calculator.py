"""
Commission Calculator.

Pure functions for creator earnings:
1. Commission split between creator and platform
2. Referral bonus (10% of referred creator's earnings for 6 months)
3. Total earnings with payout eligibility
4. Platform revenue and monthly payout summaries

Amounts are converted to integer cents on the way in and back to two-place
Decimals on the way out. Nothing in this module touches the database.
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from app.config import settings
from app.core.dates import add_months, to_date, utc_now
from app.core.money import MoneyInput, from_cents, percent_of_cents, to_cents
from app.models.earning import EarningStatus


# Business rules
PLATFORM_FEE_PERCENTAGE = 100 - settings.DEFAULT_CREATOR_COMMISSION_RATE
DEFAULT_CREATOR_COMMISSION = settings.DEFAULT_CREATOR_COMMISSION_RATE
REFERRAL_BONUS_PERCENTAGE = settings.REFERRAL_BONUS_PERCENTAGE
REFERRAL_DURATION_MONTHS = settings.REFERRAL_DURATION_MONTHS
MINIMUM_PAYOUT = settings.MINIMUM_PAYOUT

# Affiliate status -> ledger status
STATUS_MAP = {
    "APPROVED": EarningStatus.COMPLETED,
    "CONFIRMED": EarningStatus.COMPLETED,
    "PENDING": EarningStatus.PENDING,
    "LOCKED": EarningStatus.PENDING,
    "REJECTED": EarningStatus.CANCELLED,
    "REVERSED": EarningStatus.CANCELLED,
}

ZERO = Decimal("0.00")


@dataclass
class CommissionSplit:
    gross_amount: Decimal
    creator_amount: Decimal
    platform_amount: Decimal
    creator_rate: int
    platform_rate: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gross_amount": str(self.gross_amount),
            "creator_amount": str(self.creator_amount),
            "platform_amount": str(self.platform_amount),
            "creator_rate": self.creator_rate,
            "platform_rate": self.platform_rate,
        }


@dataclass
class ReferralBonus:
    bonus_amount: Decimal
    is_eligible: bool
    reason: str
    window_start: Optional[date] = None
    window_end: Optional[date] = None


@dataclass
class EarningsTotal:
    total: Decimal
    breakdown: Dict[str, Dict[str, Any]]
    eligible_for_payout: bool


@dataclass
class PayoutEligibility:
    is_eligible: bool
    checks: Dict[str, bool]
    minimum_required: Decimal
    shortfall: Decimal


@dataclass
class PayoutSummary:
    total_creators: int = 0
    total_gross: Decimal = ZERO
    total_creator_payouts: Decimal = ZERO
    total_platform_revenue: Decimal = ZERO
    eligible_creators: int = 0
    pending_amount: Decimal = ZERO
    minimum_payout: Decimal = MINIMUM_PAYOUT
    per_creator: Dict[Any, Decimal] = field(default_factory=dict)


def map_external_status(raw_status: Optional[str]) -> EarningStatus:
    """Map an affiliate action status to the ledger status (unknown -> PENDING)."""
    if not raw_status:
        return EarningStatus.PENDING
    return STATUS_MAP.get(str(raw_status).strip().upper(), EarningStatus.PENDING)


def _split_cents(gross_cents: int, rate: int) -> tuple:
    creator_cents = percent_of_cents(gross_cents, rate)
    return creator_cents, gross_cents - creator_cents


def split_commission(
    gross: MoneyInput,
    rate: int = DEFAULT_CREATOR_COMMISSION,
) -> CommissionSplit:
    """
    Split gross commission between creator and platform.

    The creator share is rounded half-up to the cent and the platform takes
    the remainder, so creator_amount + platform_amount == gross_amount
    exactly. Returns a zeroed split for rates outside 0-100 or gross <= 0.
    """
    if rate is None or not 0 <= rate <= 100:
        return CommissionSplit(ZERO, ZERO, ZERO, 0, 0)

    gross_cents = to_cents(gross)
    if gross_cents <= 0:
        return CommissionSplit(ZERO, ZERO, ZERO, rate, 100 - rate)

    creator_cents, platform_cents = _split_cents(gross_cents, rate)
    return CommissionSplit(
        gross_amount=from_cents(gross_cents),
        creator_amount=from_cents(creator_cents),
        platform_amount=from_cents(platform_cents),
        creator_rate=rate,
        platform_rate=100 - rate,
    )


def calculate_referral_bonus(
    referred_amount: MoneyInput,
    referral_start,
    earn_date=None,
) -> ReferralBonus:
    """
    Referral bonus owed to the referrer for one of the referred creator's
    earnings. Eligible when earn_date falls within [start, start + 6 months].
    """
    cents = to_cents(referred_amount or 0)
    if cents <= 0:
        return ReferralBonus(ZERO, False, "No earnings to calculate bonus from")

    window_start = to_date(referral_start)
    window_end = add_months(window_start, REFERRAL_DURATION_MONTHS)
    earned_on = to_date(earn_date) if earn_date is not None else utc_now().date()

    if not window_start <= earned_on <= window_end:
        return ReferralBonus(
            ZERO, False, "Outside 6-month referral window", window_start, window_end
        )

    return ReferralBonus(
        bonus_amount=from_cents(percent_of_cents(cents, REFERRAL_BONUS_PERCENTAGE)),
        is_eligible=True,
        reason="Eligible for referral bonus",
        window_start=window_start,
        window_end=window_end,
    )


def _amount_of(item: Any) -> MoneyInput:
    if isinstance(item, dict):
        return item.get("amount") or 0
    if isinstance(item, (Decimal, int, float, str)):
        return item
    return getattr(item, "amount", 0) or 0


def aggregate_earnings(
    commissions: Iterable[Any] = (),
    sales_bonuses: Iterable[Any] = (),
    referral_bonuses: Iterable[Any] = (),
    creator_rate: int = DEFAULT_CREATOR_COMMISSION,
) -> EarningsTotal:
    """
    Total a creator's earnings.

    `commissions` are gross amounts and are split at creator_rate; sales and
    referral bonuses belong to the creator in full.
    """
    commissions = list(commissions)
    sales_bonuses = list(sales_bonuses)
    referral_bonuses = list(referral_bonuses)

    gross_cents = 0
    net_cents = 0
    for commission in commissions:
        split = split_commission(_amount_of(commission), creator_rate)
        gross_cents += to_cents(split.gross_amount)
        net_cents += to_cents(split.creator_amount)

    sales_cents = sum(to_cents(_amount_of(b)) for b in sales_bonuses)
    referral_cents = sum(to_cents(_amount_of(b)) for b in referral_bonuses)
    total_cents = net_cents + sales_cents + referral_cents

    total = from_cents(total_cents)
    return EarningsTotal(
        total=total,
        breakdown={
            "commissions": {
                "gross": from_cents(gross_cents),
                "net": from_cents(net_cents),
                "count": len(commissions),
            },
            "sales_bonuses": {"total": from_cents(sales_cents), "count": len(sales_bonuses)},
            "referral_bonuses": {"total": from_cents(referral_cents), "count": len(referral_bonuses)},
        },
        eligible_for_payout=total >= MINIMUM_PAYOUT,
    )


def calculate_platform_revenue(
    gross_commissions: MoneyInput,
    creator_rate: int = DEFAULT_CREATOR_COMMISSION,
) -> Dict[str, Any]:
    split = split_commission(gross_commissions, creator_rate)
    return {
        "gross_commissions": split.gross_amount,
        "platform_revenue": split.platform_amount,
        "creator_payout": split.creator_amount,
        "platform_percentage": split.platform_rate if split.gross_amount > 0 else 0,
    }


def validate_payout_eligibility(
    total_earnings: MoneyInput,
    has_payment_account: bool = False,
    has_account_details: bool = False,
) -> PayoutEligibility:
    """Check minimum amount and payment account presence. No payout is made here."""
    earnings = from_cents(to_cents(total_earnings or 0))
    checks = {
        "minimum_amount": earnings >= MINIMUM_PAYOUT,
        "has_payment_account": bool(has_payment_account),
        "has_valid_account_details": bool(has_payment_account and has_account_details),
    }
    return PayoutEligibility(
        is_eligible=all(checks.values()),
        checks=checks,
        minimum_required=MINIMUM_PAYOUT,
        shortfall=max(ZERO, MINIMUM_PAYOUT - earnings),
    )


def summarize_payouts(earnings: Iterable[Any]) -> PayoutSummary:
    """
    Monthly payout summary over ledger rows.

    Uses each row's recorded gross and platform amounts rather than
    re-deriving them from a blended rate.
    """
    per_creator_cents: Dict[Any, int] = {}
    gross_cents = 0
    creator_cents = 0
    platform_cents = 0

    for earning in earnings:
        amount = to_cents(getattr(earning, "amount", 0) or 0)
        creator_id = getattr(earning, "creator_id", None)
        per_creator_cents[creator_id] = per_creator_cents.get(creator_id, 0) + amount
        creator_cents += amount
        platform_cents += to_cents(getattr(earning, "platform_amount", 0) or 0)
        gross = getattr(earning, "gross_amount", None)
        gross_cents += to_cents(gross) if gross is not None else amount

    if not per_creator_cents:
        return PayoutSummary()

    minimum_cents = to_cents(MINIMUM_PAYOUT)
    return PayoutSummary(
        total_creators=len(per_creator_cents),
        total_gross=from_cents(gross_cents),
        total_creator_payouts=from_cents(creator_cents),
        total_platform_revenue=from_cents(platform_cents),
        eligible_creators=sum(1 for c in per_creator_cents.values() if c >= minimum_cents),
        pending_amount=from_cents(sum(c for c in per_creator_cents.values() if c < minimum_cents)),
        per_creator={k: from_cents(v) for k, v in per_creator_cents.items()},
    )

