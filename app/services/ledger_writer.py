"""
Ledger Writer

The single write path into the earnings ledger. Sync, backfill and webhook
all record earnings through this service so the same rules apply:

- One Earning per external transaction id (unique constraint is the backstop)
- The creator's commission rate is locked in at insert and never recomputed
- PENDING rows are updated in place (at the locked rate)
- COMPLETED rows are only corrected through EarningsReversal rows
- CANCELLED rows are terminal
- Every new earning gets an append-only EarningsSnapshot
- New COMMISSION earnings accrue the referrer's bonus, if a referral is active
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dates import ensure_utc, utc_now
from app.core.exceptions import IdempotencyConflict, SnapshotWriteError, ValidationError
from app.core.money import MoneyInput, from_cents, percent_of_cents, to_cents, to_decimal
from app.models.creator import Creator
from app.models.earning import (
    Earning,
    EarningStatus,
    EarningType,
    EarningsReversal,
    EarningsSnapshot,
    ReferralEarning,
    ReferralStatus,
    SnapshotSource,
)
from app.schemas.affiliate import ExternalTransaction
from app.services.commission_calculator import (
    REFERRAL_BONUS_PERCENTAGE,
    calculate_referral_bonus,
    map_external_status,
    split_commission,
)

logger = logging.getLogger(__name__)

REFERRAL_SUFFIX = ":referral"


class WriteAction(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"


class LedgerWriter:
    """Idempotent writer for Earning, EarningsSnapshot and EarningsReversal rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get_by_external_id(self, external_transaction_id: str) -> Optional[Earning]:
        result = await self.db.execute(
            select(Earning).where(Earning.external_transaction_id == external_transaction_id)
        )
        return result.scalar_one_or_none()

    async def effective_amount(self, earning: Earning) -> Decimal:
        """Creator amount after all reversals."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(EarningsReversal.net_adjustment), 0))
            .where(EarningsReversal.original_earning_id == earning.id)
        )
        return to_decimal(earning.amount) + to_decimal(result.scalar() or 0)

    # ========================================================================
    # Upsert
    # ========================================================================

    async def upsert_earning(
        self,
        transaction: ExternalTransaction,
        creator: Creator,
        source: SnapshotSource = SnapshotSource.DAILY_SYNC,
        link_id: Optional[uuid.UUID] = None,
    ) -> Tuple[Earning, WriteAction]:
        """
        Record an affiliate transaction for a creator.

        Re-running with the same transaction is a no-op; a changed status or
        amount updates PENDING rows and produces a reversal for COMPLETED ones.
        """
        status = map_external_status(transaction.raw_status)
        existing = await self.get_by_external_id(transaction.external_id)
        if existing is not None:
            return await self._apply_update(existing, transaction, status)

        try:
            earning = await self.create_earning(
                creator=creator,
                gross_amount=transaction.gross_amount,
                earned_at=transaction.event_timestamp,
                status=status,
                source=source,
                link_id=link_id,
                external_transaction_id=transaction.external_id,
            )
        except IdempotencyConflict as conflict:
            # Lost a race with a concurrent writer; treat as an update
            existing = await self.get_by_external_id(transaction.external_id)
            if existing is None:
                raise
            logger.info(f"{conflict}; applying as update")
            return await self._apply_update(existing, transaction, status)

        return earning, WriteAction.CREATED

    async def create_earning(
        self,
        creator: Creator,
        gross_amount: MoneyInput,
        earned_at: datetime,
        status: EarningStatus = EarningStatus.PENDING,
        source: SnapshotSource = SnapshotSource.DAILY_SYNC,
        link_id: Optional[uuid.UUID] = None,
        external_transaction_id: Optional[str] = None,
        earning_type: EarningType = EarningType.COMMISSION,
    ) -> Earning:
        """
        Insert a new earning at the creator's current rate and commit.

        Raises IdempotencyConflict if external_transaction_id is already
        recorded, ValidationError if there is nothing to split.
        """
        split = split_commission(gross_amount, creator.commission_rate)
        if split.gross_amount <= 0:
            raise ValidationError(
                "Transaction has no commissionable amount",
                {
                    "external_transaction_id": external_transaction_id,
                    "gross_amount": gross_amount,
                    "commission_rate": creator.commission_rate,
                },
            )

        now = utc_now()
        earning = Earning(
            id=uuid.uuid4(),
            creator_id=creator.id,
            link_id=link_id,
            amount=split.creator_amount,
            platform_amount=split.platform_amount,
            gross_amount=split.gross_amount,
            type=earning_type.value,
            status=status.value,
            external_transaction_id=external_transaction_id,
            applied_commission_rate=split.creator_rate,
            rate_effective_date=now,
            earned_at=ensure_utc(earned_at) or now,
        )
        await self._insert(earning)

        await self.append_snapshot(earning, source)
        if earning_type == EarningType.COMMISSION:
            await self._accrue_referral_bonus(earning, source)

        await self.db.commit()
        logger.info(
            f"Recorded earning {external_transaction_id or earning.id} for creator {creator.id}: "
            f"{split.creator_amount} of {split.gross_amount} at {split.creator_rate}%"
        )
        return earning

    async def _insert(self, earning: Earning) -> None:
        try:
            async with self.db.begin_nested():
                self.db.add(earning)
        except IntegrityError as e:
            raise IdempotencyConflict(
                earning.external_transaction_id,
                {"creator_id": earning.creator_id},
            ) from e

    async def _apply_update(
        self,
        earning: Earning,
        transaction: ExternalTransaction,
        target_status: EarningStatus,
    ) -> Tuple[Earning, WriteAction]:
        if earning.status == EarningStatus.CANCELLED.value:
            return earning, WriteAction.UNCHANGED

        # Always the locked rate, never the creator's current one
        split = split_commission(transaction.gross_amount, earning.applied_commission_rate)

        if earning.status == EarningStatus.PENDING.value:
            changed = False
            if target_status == EarningStatus.CANCELLED:
                earning.status = EarningStatus.CANCELLED.value
                changed = True
            else:
                if to_decimal(earning.gross_amount) != split.gross_amount:
                    earning.gross_amount = split.gross_amount
                    earning.amount = split.creator_amount
                    earning.platform_amount = split.platform_amount
                    changed = True
                if target_status == EarningStatus.COMPLETED:
                    earning.status = EarningStatus.COMPLETED.value
                    changed = True

            if not changed:
                return earning, WriteAction.UNCHANGED

            if earning.status != EarningStatus.CANCELLED.value:
                await self._correct_referral_bonus(
                    earning, to_decimal(earning.amount), f"Referred amount changed to {earning.amount}"
                )
            await self._sync_referral_bonus_status(earning)
            await self.db.commit()
            logger.info(
                f"Updated earning {earning.external_transaction_id}: "
                f"status={earning.status}, amount={earning.amount}"
            )
            return earning, WriteAction.UPDATED

        # COMPLETED: correct through a reversal against the net effective amount
        target_amount = Decimal("0.00") if target_status == EarningStatus.CANCELLED else split.creator_amount
        current_amount = await self.effective_amount(earning)
        if target_amount == current_amount:
            return earning, WriteAction.UNCHANGED

        reason = (
            f"Affiliate status {transaction.raw_status}"
            if target_status == EarningStatus.CANCELLED
            else f"Affiliate amount changed to {split.gross_amount}"
        )
        await self.record_reversal(earning, target_amount, current_amount, reason)
        await self._correct_referral_bonus(earning, target_amount, f"Referred earning: {reason}")
        await self.db.commit()
        return earning, WriteAction.UPDATED

    # ========================================================================
    # Reversals and snapshots
    # ========================================================================

    async def record_reversal(
        self,
        earning: Earning,
        new_amount: Decimal,
        previous_amount: Decimal,
        reason: str,
    ) -> EarningsReversal:
        """Add a correction row; the caller commits."""
        reversal = EarningsReversal(
            id=uuid.uuid4(),
            creator_id=earning.creator_id,
            original_earning_id=earning.id,
            reversal_amount=to_decimal(new_amount),
            original_amount=to_decimal(previous_amount),
            net_adjustment=to_decimal(new_amount) - to_decimal(previous_amount),
            reason=reason,
            original_commission_rate=earning.applied_commission_rate,
        )
        self.db.add(reversal)
        await self.db.flush()
        logger.warning(
            f"Reversal on earning {earning.external_transaction_id or earning.id}: "
            f"{previous_amount} -> {new_amount} ({reason})"
        )
        return reversal

    async def append_snapshot(
        self,
        earning: Earning,
        source: SnapshotSource,
    ) -> Optional[EarningsSnapshot]:
        """
        Write the audit snapshot for a new earning. A failure here is logged
        and swallowed; the earning itself is kept.
        """
        snapshot = EarningsSnapshot(
            id=uuid.uuid4(),
            creator_id=earning.creator_id,
            earning_id=earning.id,
            link_id=earning.link_id,
            original_amount=earning.amount,
            commission_rate=earning.applied_commission_rate,
            gross_amount=earning.gross_amount,
            type=earning.type,
            source=source.value,
            external_transaction_id=earning.external_transaction_id,
            earned_at=earning.earned_at,
            rate_effective_date=earning.rate_effective_date,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(snapshot)
        except SQLAlchemyError as e:
            error = SnapshotWriteError(
                f"Snapshot write failed: {e}",
                {"earning_id": earning.id, "source": source.value},
            )
            logger.error(str(error))
            return None
        return snapshot

    # ========================================================================
    # Referral bonus
    # ========================================================================

    async def _active_referral(self, creator_id: uuid.UUID) -> Optional[ReferralEarning]:
        result = await self.db.execute(
            select(ReferralEarning)
            .where(
                ReferralEarning.referred_id == creator_id,
                ReferralEarning.status == ReferralStatus.ACTIVE.value,
            )
            .order_by(ReferralEarning.start_date)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _accrue_referral_bonus(self, earning: Earning, source: SnapshotSource) -> Optional[Earning]:
        referral = await self._active_referral(earning.creator_id)
        if referral is None:
            return None

        bonus = calculate_referral_bonus(earning.amount, referral.start_date, earning.earned_at)
        if not bonus.is_eligible:
            logger.debug(f"No referral bonus for earning {earning.id}: {bonus.reason}")
            return None

        bonus_earning = Earning(
            id=uuid.uuid4(),
            creator_id=referral.referrer_id,
            link_id=None,
            amount=bonus.bonus_amount,
            platform_amount=Decimal("0.00"),
            gross_amount=bonus.bonus_amount,
            type=EarningType.REFERRAL_BONUS.value,
            status=earning.status,
            external_transaction_id=(
                f"{earning.external_transaction_id}{REFERRAL_SUFFIX}"
                if earning.external_transaction_id else None
            ),
            applied_commission_rate=100,
            rate_effective_date=earning.rate_effective_date,
            earned_at=earning.earned_at,
        )
        try:
            await self._insert(bonus_earning)
        except IdempotencyConflict:
            logger.info(f"Referral bonus for {earning.external_transaction_id} already recorded")
            return None

        referral.amount = to_decimal(referral.amount or 0) + bonus.bonus_amount
        await self.append_snapshot(bonus_earning, source)
        logger.info(
            f"Referral bonus {bonus.bonus_amount} to creator {referral.referrer_id} "
            f"from earning {earning.id}"
        )
        return bonus_earning

    async def _bonus_for(self, earning: Earning) -> Optional[Earning]:
        if not earning.external_transaction_id or earning.type != EarningType.COMMISSION.value:
            return None
        return await self.get_by_external_id(f"{earning.external_transaction_id}{REFERRAL_SUFFIX}")

    async def _referral_for(self, earning: Earning, bonus: Earning) -> Optional[ReferralEarning]:
        result = await self.db.execute(
            select(ReferralEarning)
            .where(
                ReferralEarning.referred_id == earning.creator_id,
                ReferralEarning.referrer_id == bonus.creator_id,
            )
            .order_by(ReferralEarning.start_date)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _correct_referral_bonus(
        self,
        earning: Earning,
        referred_amount: Decimal,
        reason: str,
    ) -> None:
        """
        Keep the bonus at REFERRAL_BONUS_PERCENTAGE of the referred earning's
        effective amount. PENDING bonuses are rewritten in place, COMPLETED
        ones get a reversal. The caller commits.
        """
        bonus = await self._bonus_for(earning)
        if bonus is None or bonus.status == EarningStatus.CANCELLED.value:
            return

        target = from_cents(percent_of_cents(to_cents(referred_amount), REFERRAL_BONUS_PERCENTAGE))
        if bonus.status == EarningStatus.PENDING.value:
            current = to_decimal(bonus.amount)
            if target == current:
                return
            bonus.amount = target
            bonus.gross_amount = target
        else:
            current = await self.effective_amount(bonus)
            if target == current:
                return
            await self.record_reversal(bonus, target, current, reason)

        referral = await self._referral_for(earning, bonus)
        if referral is not None:
            referral.amount = to_decimal(referral.amount or 0) + (target - current)
        logger.info(
            f"Referral bonus {bonus.external_transaction_id} corrected: {current} -> {target}"
        )

    async def _sync_referral_bonus_status(self, earning: Earning) -> None:
        """Carry a PENDING referred earning's new status to its bonus row."""
        bonus = await self._bonus_for(earning)
        if bonus is None or bonus.status != EarningStatus.PENDING.value:
            return

        bonus.status = earning.status
        if earning.status == EarningStatus.CANCELLED.value:
            referral = await self._referral_for(earning, bonus)
            if referral is not None:
                referral.amount = to_decimal(referral.amount or 0) - to_decimal(bonus.amount)
