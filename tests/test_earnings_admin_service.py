"""Tests for the admin operations, wiring and scheduled jobs."""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest

from app import database
from app.config import Settings
from app.core.exceptions import ConfigurationError, ValidationError
from app.core.sync_context import create_sync_context
from app.jobs import earnings_jobs
import sys
import app.jobs.scheduler  # noqa: F401  (ensure the submodule is loaded)
scheduler_module = sys.modules["app.jobs.scheduler"]
from app.jobs.scheduler import (
    get_job_context,
    get_job_status,
    register_jobs,
    scheduler,
    shutdown_scheduler,
)
from app.models.earning import EarningStatus
from app.services.earnings_admin_service import EarningsAdminService
from app.services.ledger_writer import LedgerWriter


def make_settings(**overrides) -> Settings:
    values = {
        "IMPACT_ACCOUNT_SID": "IRtestSID",
        "IMPACT_AUTH_TOKEN": "secret-token",
        "IMPACT_API_BASE_URL": "https://api.impact.test",
        "AFFILIATE_MAX_CALLS_PER_MINUTE": 1000,
        "AFFILIATE_MAX_CALLS_PER_HOUR": 10000,
        "AFFILIATE_MIN_CALL_INTERVAL_SECONDS": 0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
async def sync_context(actions_response, impact_action, sleep):
    def handler(request):
        if "/Reports/" in request.url.path:
            return httpx.Response(200, json={"Records": []})
        return actions_response([impact_action("ADM-1", payout="10.00", subid="trk-a")])

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    context = create_sync_context(make_settings(), http_client=http_client, sleep=sleep)
    yield context
    await context.aclose()
    await http_client.aclose()


class TestEarningsAdminService:

    async def test_trigger_sync(self, db, make_creator, sync_context):
        await make_creator(external_tracking_id="trk-a")
        result = await EarningsAdminService(db, sync_context).trigger_sync(date(2025, 1, 1), date(2025, 1, 31))

        assert result["success"] is True
        assert result["stats"]["created"] == 1
        assert result["errors"] == []
        assert result["duration"] >= 0

    async def test_trigger_sync_reports_configuration_errors(self, db, sleep):
        context = create_sync_context(make_settings(IMPACT_AUTH_TOKEN=""), sleep=sleep)
        try:
            result = await EarningsAdminService(db, context).trigger_sync()
        finally:
            await context.aclose()

        assert result["success"] is False
        assert "not configured" in result["errors"][0]

    async def test_earnings_summary(self, db, make_creator, sync_context):
        alice = await make_creator(name="Alice", commission_rate=70)
        bob = await make_creator(name="Bob", commission_rate=50)
        ledger = LedgerWriter(db)
        when = datetime(2025, 1, 10, 12, tzinfo=timezone.utc)
        await ledger.create_earning(alice, "100.00", when, status=EarningStatus.COMPLETED)
        await ledger.create_earning(alice, "50.00", when, status=EarningStatus.PENDING)
        await ledger.create_earning(bob, "20.00", when, status=EarningStatus.CANCELLED)
        await ledger.create_earning(bob, "40.00", datetime(2025, 3, 1, tzinfo=timezone.utc))

        summary = await EarningsAdminService(db, sync_context).get_earnings_summary(
            date(2025, 1, 1), date(2025, 1, 31)
        )

        groups = {(g["creator_name"], g["status"]): g for g in summary["groups"]}
        assert set(groups) == {("Alice", "COMPLETED"), ("Alice", "PENDING"), ("Bob", "CANCELLED")}
        assert groups[("Alice", "COMPLETED")]["total_amount"] == Decimal("70.00")
        assert groups[("Alice", "PENDING")]["platform_amount"] == Decimal("15.00")
        assert summary["groups"][0]["creator_name"] == "Alice"
        assert summary["totals_by_status"]["CANCELLED"] == Decimal("10.00")
        assert summary["payout_summary"]["total_creators"] == 1
        assert summary["payout_summary"]["total_creator_payouts"] == Decimal("105.00")
        assert summary["payout_summary"]["eligible_creators"] == 1

    async def test_backfill_single_creator(self, db, make_creator, sync_context):
        creator = await make_creator(external_tracking_id="trk-a")
        summary = await EarningsAdminService(db, sync_context).backfill_historical_data(
            date(2025, 1, 1), date(2025, 1, 2), creator.id
        )
        assert summary["creators_processed"] == 1
        assert summary["records_created"] == 2
        assert summary["date_range"] == {"start": "2025-01-01", "end": "2025-01-02"}

    async def test_backfill_unknown_creator(self, db, sync_context):
        with pytest.raises(ValidationError):
            await EarningsAdminService(db, sync_context).backfill_historical_data(
                date(2025, 1, 1), date(2025, 1, 2), uuid.uuid4()
            )

    async def test_backfill_rejects_inverted_range(self, db, sync_context):
        with pytest.raises(ValidationError):
            await EarningsAdminService(db, sync_context).backfill_historical_data(
                date(2025, 1, 5), date(2025, 1, 1)
            )


class TestJobs:

    async def test_jobs_are_registered(self, sleep):
        context = create_sync_context(make_settings(), sleep=sleep)
        try:
            register_jobs(context)
            status = {job["id"]: job for job in get_job_status()}
            assert set(status) == {"earnings_sync", "daily_analytics"}
            assert "cron" in status["daily_analytics"]["trigger"]
            assert "interval" in status["earnings_sync"]["trigger"]
        finally:
            scheduler.remove_all_jobs()
            await shutdown_scheduler()

    async def test_scheduled_jobs_share_one_context(self, sleep):
        context = create_sync_context(make_settings(), sleep=sleep)
        try:
            register_jobs(context)
            sync_job = scheduler.get_job("earnings_sync")
            analytics_job = scheduler.get_job("daily_analytics")

            assert sync_job.kwargs["context"] is context
            assert analytics_job.kwargs["context"] is context
            assert get_job_context() is context

            # Re-registering keeps the same limiter and cache
            register_jobs()
            assert scheduler.get_job("earnings_sync").kwargs["context"].rate_limiter is context.rate_limiter
        finally:
            scheduler.remove_all_jobs()
            await shutdown_scheduler()

        assert scheduler_module._job_context is None

    async def test_daily_analytics_job(self, monkeypatch, session_factory, make_creator, sleep):
        await make_creator()
        monkeypatch.setattr(database, "async_session_factory", session_factory)
        context = create_sync_context(make_settings(IMPACT_ACCOUNT_SID=""), sleep=sleep)
        try:
            summary = await earnings_jobs.run_daily_analytics_job(date(2025, 1, 5), context=context)
        finally:
            await context.aclose()

        assert summary["successful"] == 1
        assert summary["fallback"] == 1

    async def test_sync_job_reraises_failures(self, monkeypatch, session_factory, sleep):
        monkeypatch.setattr(database, "async_session_factory", session_factory)
        context = create_sync_context(make_settings(IMPACT_ACCOUNT_SID=""), sleep=sleep)
        try:
            with pytest.raises(ConfigurationError):
                await earnings_jobs.run_earnings_sync_job(context=context)
        finally:
            await context.aclose()
