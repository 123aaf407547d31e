"""Per-creator, per-day analytics rollup."""
import uuid
from datetime import datetime, timezone, date as date_type
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Integer, Date, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType, MoneyType


class DataSource(str, Enum):
    EXTERNAL_API = "EXTERNAL_API"
    INTERNAL_FALLBACK = "INTERNAL_FALLBACK"


class DailyAnalytics(Base):
    """
    One row per (creator, day).

    INTERNAL_FALLBACK rows were derived from our own Earning/Link tables
    because the affiliate API was unavailable; backfill treats them as gaps.
    """
    __tablename__ = "daily_analytics"
    __table_args__ = (
        UniqueConstraint('creator_id', 'date', name='uq_daily_analytics_creator_date'),
        Index('ix_daily_analytics_date', 'date'),
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
    date: Mapped[date_type] = mapped_column(Date, nullable=False)

    commissionable_sales: Mapped[Decimal] = mapped_column(
        MoneyType,
        default=Decimal("0.00"),
        nullable=False
    )
    commission_earned: Mapped[Decimal] = mapped_column(
        MoneyType,
        default=Decimal("0.00"),
        nullable=False,
        comment="Creator share"
    )
    gross_commission_earned: Mapped[Decimal] = mapped_column(
        MoneyType,
        default=Decimal("0.00"),
        nullable=False
    )
    clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    applied_commission_rate: Mapped[int] = mapped_column(Integer, nullable=False)

    data_source: Mapped[str] = mapped_column(
        String(30),
        default=DataSource.EXTERNAL_API.value,
        nullable=False
    )
    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<DailyAnalytics(creator={self.creator_id}, date={self.date}, "
            f"source={self.data_source})>"
        )
