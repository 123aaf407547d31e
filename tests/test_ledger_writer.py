"""
Tests for the ledger write path

Tests cover:
1. Idempotent upsert by external transaction id
2. Commission rate locked at write time
3. PENDING updates, COMPLETED reversals, CANCELLED terminal
4. Append-only snapshots
5. Referral bonus accrual
"""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from app.core.exceptions import IdempotencyConflict, SnapshotImmutableError, ValidationError
from app.models.earning import (
    Earning,
    EarningStatus,
    EarningType,
    EarningsReversal,
    EarningsSnapshot,
    ReferralEarning,
    SnapshotSource,
)
from app.schemas.affiliate import RAW_STATUS_MAP, ExternalTransaction
from app.services.ledger_writer import LedgerWriter, WriteAction


def transaction(external_id="T1", gross="100.00", status="PENDING", when="2025-01-05T10:00:00Z"):
    return ExternalTransaction(
        external_id=external_id,
        gross_amount=gross,
        tracking_id="trk-a",
        event_timestamp=when,
        status=RAW_STATUS_MAP[status],
        raw_status=status,
    )


async def count(db, model):
    return (await db.execute(select(func.count()).select_from(model))).scalar()


class TestUpsertEarning:

    async def test_new_transaction_is_split_and_snapshotted(self, db, make_creator):
        creator = await make_creator(commission_rate=70)
        ledger = LedgerWriter(db)

        earning, action = await ledger.upsert_earning(transaction(), creator)

        assert action == WriteAction.CREATED
        assert earning.amount == Decimal("70.00")
        assert earning.platform_amount == Decimal("30.00")
        assert earning.gross_amount == Decimal("100.00")
        assert earning.status == EarningStatus.PENDING.value
        assert earning.applied_commission_rate == 70
        assert earning.rate_effective_date is not None

        snapshots = (await db.execute(select(EarningsSnapshot))).scalars().all()
        assert len(snapshots) == 1
        assert snapshots[0].earning_id == earning.id
        assert snapshots[0].original_amount == Decimal("70.00")
        assert snapshots[0].commission_rate == 70
        assert snapshots[0].source == SnapshotSource.DAILY_SYNC.value

    async def test_same_transaction_twice_is_a_no_op(self, db, make_creator):
        creator = await make_creator()
        ledger = LedgerWriter(db)

        first, _ = await ledger.upsert_earning(transaction(), creator)
        second, action = await ledger.upsert_earning(transaction(), creator)

        assert action == WriteAction.UNCHANGED
        assert second.id == first.id
        assert await count(db, Earning) == 1
        assert await count(db, EarningsSnapshot) == 1

    async def test_zero_commission_is_rejected(self, db, make_creator):
        creator = await make_creator()
        with pytest.raises(ValidationError):
            await LedgerWriter(db).upsert_earning(transaction(gross="0"), creator)

    async def test_duplicate_insert_raises_conflict(self, db, make_creator):
        creator = await make_creator()
        ledger = LedgerWriter(db)
        when = datetime(2025, 1, 5, tzinfo=timezone.utc)

        await ledger.create_earning(creator, "10.00", when, external_transaction_id="DUP")
        with pytest.raises(IdempotencyConflict):
            await ledger.create_earning(creator, "10.00", when, external_transaction_id="DUP")
        assert await count(db, Earning) == 1


class TestRateLock:

    async def test_rate_change_does_not_touch_existing_earnings(self, db, make_creator):
        creator = await make_creator(commission_rate=70)
        ledger = LedgerWriter(db)
        earning, _ = await ledger.upsert_earning(transaction("T1"), creator)

        creator.commission_rate = 80
        await db.commit()

        updated, action = await ledger.upsert_earning(transaction("T1", status="APPROVED"), creator)
        assert action == WriteAction.UPDATED
        assert updated.status == EarningStatus.COMPLETED.value
        assert updated.amount == Decimal("70.00")
        assert updated.applied_commission_rate == 70

        newer, _ = await ledger.upsert_earning(transaction("T2"), creator)
        assert newer.amount == Decimal("80.00")
        assert newer.applied_commission_rate == 80

        snapshot = (
            await db.execute(select(EarningsSnapshot).where(EarningsSnapshot.earning_id == earning.id))
        ).scalar_one()
        assert snapshot.commission_rate == 70
        assert snapshot.original_amount == Decimal("70.00")

    async def test_pending_amount_change_uses_locked_rate(self, db, make_creator):
        creator = await make_creator(commission_rate=70)
        ledger = LedgerWriter(db)
        await ledger.upsert_earning(transaction(gross="100.00"), creator)
        creator.commission_rate = 50
        await db.commit()

        earning, action = await ledger.upsert_earning(transaction(gross="120.00"), creator)
        assert action == WriteAction.UPDATED
        assert earning.amount == Decimal("84.00")
        assert earning.platform_amount == Decimal("36.00")


class TestStatusTransitions:

    async def test_completed_reversal(self, db, make_creator):
        creator = await make_creator()
        ledger = LedgerWriter(db)
        earning, _ = await ledger.upsert_earning(transaction(status="APPROVED"), creator)
        assert earning.status == EarningStatus.COMPLETED.value

        _, action = await ledger.upsert_earning(transaction(status="REVERSED"), creator)
        assert action == WriteAction.UPDATED

        reversal = (await db.execute(select(EarningsReversal))).scalar_one()
        assert reversal.original_earning_id == earning.id
        assert reversal.net_adjustment == Decimal("-70.00")
        assert reversal.original_commission_rate == 70
        assert await ledger.effective_amount(earning) == Decimal("0.00")
        # Original row is left as recorded
        assert earning.amount == Decimal("70.00")

        _, again = await ledger.upsert_earning(transaction(status="REVERSED"), creator)
        assert again == WriteAction.UNCHANGED
        assert await count(db, EarningsReversal) == 1

    async def test_completed_amount_correction(self, db, make_creator):
        creator = await make_creator()
        ledger = LedgerWriter(db)
        earning, _ = await ledger.upsert_earning(transaction(status="APPROVED"), creator)

        await ledger.upsert_earning(transaction(gross="80.00", status="APPROVED"), creator)

        reversal = (await db.execute(select(EarningsReversal))).scalar_one()
        assert reversal.net_adjustment == Decimal("-14.00")
        assert await ledger.effective_amount(earning) == Decimal("56.00")

    async def test_cancelled_is_terminal(self, db, make_creator):
        creator = await make_creator()
        ledger = LedgerWriter(db)
        await ledger.upsert_earning(transaction(), creator)

        earning, action = await ledger.upsert_earning(transaction(status="REJECTED"), creator)
        assert action == WriteAction.UPDATED
        assert earning.status == EarningStatus.CANCELLED.value

        earning, action = await ledger.upsert_earning(transaction(status="APPROVED"), creator)
        assert action == WriteAction.UNCHANGED
        assert earning.status == EarningStatus.CANCELLED.value


class TestSnapshots:

    async def test_snapshots_cannot_be_modified(self, db, make_creator):
        creator = await make_creator()
        await LedgerWriter(db).upsert_earning(transaction(), creator)

        snapshot = (await db.execute(select(EarningsSnapshot))).scalar_one()
        snapshot.original_amount = Decimal("1.00")
        with pytest.raises(SnapshotImmutableError):
            await db.commit()
        await db.rollback()

        stored = (
            await db.execute(select(EarningsSnapshot.original_amount))
        ).scalar_one()
        assert stored == Decimal("70.00")

    async def test_webhook_source_is_recorded(self, db, make_creator):
        creator = await make_creator()
        await LedgerWriter(db).upsert_earning(transaction(), creator, SnapshotSource.WEBHOOK)
        snapshot = (await db.execute(select(EarningsSnapshot))).scalar_one()
        assert snapshot.source == SnapshotSource.WEBHOOK.value


class TestReferralBonus:

    async def _referral(self, db, make_creator):
        referrer = await make_creator(name="Referrer")
        referred = await make_creator(name="Referred", commission_rate=50)
        referral = ReferralEarning(
            id=uuid.uuid4(),
            referrer_id=referrer.id,
            referred_id=referred.id,
            amount=Decimal("0.00"),
            start_date=date(2025, 1, 1),
            end_date=date(2025, 7, 1),
        )
        db.add(referral)
        await db.commit()
        return referrer, referred, referral

    async def test_bonus_accrues_inside_window(self, db, make_creator):
        referrer, referred, referral = await self._referral(db, make_creator)
        ledger = LedgerWriter(db)

        earning, _ = await ledger.upsert_earning(
            transaction("R1", gross="100.00", when="2025-06-01T12:00:00Z"), referred
        )
        assert earning.amount == Decimal("50.00")

        bonus = await ledger.get_by_external_id("R1:referral")
        assert bonus is not None
        assert bonus.creator_id == referrer.id
        assert bonus.type == EarningType.REFERRAL_BONUS.value
        assert bonus.amount == Decimal("5.00")
        assert bonus.platform_amount == Decimal("0.00")
        assert referral.amount == Decimal("5.00")

    async def test_no_bonus_outside_window(self, db, make_creator):
        _, referred, referral = await self._referral(db, make_creator)
        ledger = LedgerWriter(db)

        await ledger.upsert_earning(
            transaction("R2", gross="100.00", when="2025-08-01T12:00:00Z"), referred
        )
        assert await ledger.get_by_external_id("R2:referral") is None
        assert referral.amount == Decimal("0.00")

    async def test_bonus_follows_cancellation(self, db, make_creator):
        _, referred, referral = await self._referral(db, make_creator)
        ledger = LedgerWriter(db)

        await ledger.upsert_earning(transaction("R3", when="2025-03-01T12:00:00Z"), referred)
        await ledger.upsert_earning(
            transaction("R3", status="REJECTED", when="2025-03-01T12:00:00Z"), referred
        )

        bonus = await ledger.get_by_external_id("R3:referral")
        assert bonus.status == EarningStatus.CANCELLED.value
        assert referral.amount == Decimal("0.00")

    async def test_completed_reversal_reverses_bonus(self, db, make_creator):
        _, referred, referral = await self._referral(db, make_creator)
        ledger = LedgerWriter(db)
        when = "2025-03-01T12:00:00Z"

        earning, _ = await ledger.upsert_earning(transaction("R4", status="APPROVED", when=when), referred)
        bonus = await ledger.get_by_external_id("R4:referral")
        assert bonus.status == EarningStatus.COMPLETED.value
        assert referral.amount == Decimal("5.00")

        _, action = await ledger.upsert_earning(transaction("R4", status="REVERSED", when=when), referred)

        assert action == WriteAction.UPDATED
        assert await ledger.effective_amount(earning) == Decimal("0.00")
        assert await ledger.effective_amount(bonus) == Decimal("0.00")
        assert bonus.amount == Decimal("5.00")
        assert referral.amount == Decimal("0.00")

        bonus_reversal = (
            await db.execute(select(EarningsReversal).where(EarningsReversal.original_earning_id == bonus.id))
        ).scalar_one()
        assert bonus_reversal.net_adjustment == Decimal("-5.00")

    async def test_completed_amount_correction_rescales_bonus(self, db, make_creator):
        _, referred, referral = await self._referral(db, make_creator)
        ledger = LedgerWriter(db)
        when = "2025-03-01T12:00:00Z"

        await ledger.upsert_earning(transaction("R5", status="APPROVED", when=when), referred)
        await ledger.upsert_earning(
            transaction("R5", gross="60.00", status="APPROVED", when=when), referred
        )

        bonus = await ledger.get_by_external_id("R5:referral")
        assert await ledger.effective_amount(bonus) == Decimal("3.00")
        assert referral.amount == Decimal("3.00")

    async def test_pending_amount_change_rescales_bonus(self, db, make_creator):
        _, referred, referral = await self._referral(db, make_creator)
        ledger = LedgerWriter(db)
        when = "2025-03-01T12:00:00Z"

        await ledger.upsert_earning(transaction("R6", gross="100.00", when=when), referred)
        earning, action = await ledger.upsert_earning(transaction("R6", gross="20.00", when=when), referred)

        assert action == WriteAction.UPDATED
        assert earning.amount == Decimal("10.00")
        bonus = await ledger.get_by_external_id("R6:referral")
        assert bonus.status == EarningStatus.PENDING.value
        assert bonus.amount == Decimal("1.00")
        assert bonus.gross_amount == Decimal("1.00")
        assert referral.amount == Decimal("1.00")
        assert await count(db, EarningsReversal) == 0
