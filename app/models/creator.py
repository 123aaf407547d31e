"""Creator and Link models.

Both tables are owned by the account/link systems. The earnings core reads
them; the only writes are the Link aggregate counters bumped by the
conversion webhook.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType, MoneyType

if TYPE_CHECKING:
    from app.models.earning import Earning


class Creator(Base):
    """
    Content creator who earns commissions on affiliate links.

    `commission_rate` is the creator's *current* share of gross commission.
    Historical earnings keep the rate that was in force when they were
    recorded (see Earning.applied_commission_rate).
    """
    __tablename__ = "creators"
    __table_args__ = (
        Index('ix_creators_is_active', 'is_active'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    commission_rate: Mapped[int] = mapped_column(
        Integer,
        default=70,
        nullable=False,
        comment="Creator share of gross commission, 0-100"
    )

    # SubId1 embedded in the creator's tracking links
    external_tracking_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
        comment="Stored affiliate SubId1"
    )
    referral_code: Mapped[Optional[str]] = mapped_column(
        String(50),
        unique=True,
        nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    links: Mapped[List["Link"]] = relationship("Link", back_populates="creator")
    earnings: Mapped[List["Earning"]] = relationship("Earning", back_populates="creator")

    def __repr__(self) -> str:
        return f"<Creator(id={self.id}, email={self.email}, rate={self.commission_rate})>"


class Link(Base):
    """Affiliate short link with running click/conversion aggregates."""
    __tablename__ = "links"
    __table_args__ = (
        Index('ix_links_creator_created', 'creator_id', 'created_at'),
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
    short_code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    destination_url: Mapped[str] = mapped_column(String(2048), nullable=False)

    clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    revenue: Mapped[Decimal] = mapped_column(
        MoneyType,
        default=Decimal("0.00"),
        nullable=False,
        comment="Gross commission attributed to this link"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    creator: Mapped["Creator"] = relationship("Creator", back_populates="links")

    def __repr__(self) -> str:
        return f"<Link(short_code={self.short_code}, clicks={self.clicks})>"
