"""Earnings ledger models.

Earning            - one row per commissionable event, rate locked at write time
EarningsSnapshot   - append-only audit copy of an earning as first recorded
EarningsReversal   - signed correction against a COMPLETED earning
ReferralEarning    - referrer/referred relationship with a 6-month bonus window
"""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    String, Integer, DateTime, Date, ForeignKey, Index, Text,
    UniqueConstraint, event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.exceptions import SnapshotImmutableError
from app.database import Base
from app.db_types import UUIDType, MoneyType

if TYPE_CHECKING:
    from app.models.creator import Creator


class EarningType(str, Enum):
    COMMISSION = "COMMISSION"
    SALES_BONUS = "SALES_BONUS"
    REFERRAL_BONUS = "REFERRAL_BONUS"


class EarningStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class SnapshotSource(str, Enum):
    """Which pipeline recorded the earning."""
    WEBHOOK = "WEBHOOK"
    BACKFILL = "BACKFILL"
    DAILY_SYNC = "DAILY_SYNC"


class ReferralStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class Earning(Base):
    """
    Ledger entry for a single commissionable event.

    `amount` is the creator's share, `platform_amount` the platform's share;
    together they always equal `gross_amount`. `applied_commission_rate` is
    copied from the creator at insert and never recomputed.
    """
    __tablename__ = "earnings"
    __table_args__ = (
        UniqueConstraint('external_transaction_id', name='uq_earnings_external_transaction_id'),
        Index('ix_earnings_creator_earned', 'creator_id', 'earned_at'),
        Index('ix_earnings_status', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    creator_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("creators.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    link_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("links.id", ondelete="SET NULL"),
        nullable=True
    )

    amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Creator share"
    )
    platform_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        default=Decimal("0.00"),
        nullable=False
    )
    gross_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Network commission before the split"
    )

    type: Mapped[str] = mapped_column(
        String(30),
        default=EarningType.COMMISSION.value,
        nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=EarningStatus.PENDING.value,
        nullable=False
    )

    # Idempotency key; NULL for earnings with no upstream id
    external_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True
    )

    applied_commission_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    rate_effective_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False
    )
    earned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    creator: Mapped["Creator"] = relationship("Creator", back_populates="earnings")

    def __repr__(self) -> str:
        return (
            f"<Earning(ext={self.external_transaction_id}, amount={self.amount}, "
            f"status={self.status})>"
        )


class EarningsSnapshot(Base):
    """
    Point-in-time audit record written once when an earning is created.

    Rows are never updated; see the before_update listener below.
    """
    __tablename__ = "earnings_snapshots"
    __table_args__ = (
        Index('ix_earnings_snapshots_creator_earned', 'creator_id', 'earned_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    creator_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("creators.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    earning_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("earnings.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    link_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    original_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    commission_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    gross_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    external_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    earned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    snapshot_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    rate_effective_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<EarningsSnapshot(earning_id={self.earning_id}, amount={self.original_amount})>"


@event.listens_for(EarningsSnapshot, "before_update")
def _reject_snapshot_update(mapper, connection, target):
    raise SnapshotImmutableError(
        "Earnings snapshots are append-only",
        {"snapshot_id": target.id},
    )


class EarningsReversal(Base):
    """Correction against a COMPLETED earning. Negative net_adjustment reduces it."""
    __tablename__ = "earnings_reversals"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    creator_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("creators.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    original_earning_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("earnings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    reversal_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="New effective creator amount"
    )
    original_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Effective creator amount before this correction"
    )
    net_adjustment: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    original_commission_rate: Mapped[int] = mapped_column(Integer, nullable=False)

    reversed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<EarningsReversal(earning={self.original_earning_id}, "
            f"net={self.net_adjustment})>"
        )


class ReferralEarning(Base):
    """
    Referral relationship. The referrer earns a bonus on the referred
    creator's commissions between start_date and end_date inclusive.
    """
    __tablename__ = "referral_earnings"
    __table_args__ = (
        UniqueConstraint('referrer_id', 'referred_id', name='uq_referral_pair'),
        Index('ix_referral_earnings_referred_status', 'referred_id', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    referrer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("creators.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    referred_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("creators.id", ondelete="CASCADE"),
        nullable=False
    )

    amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        default=Decimal("0.00"),
        nullable=False,
        comment="Total bonus accrued to the referrer"
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=ReferralStatus.ACTIVE.value,
        nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<ReferralEarning(referrer={self.referrer_id}, referred={self.referred_id})>"
