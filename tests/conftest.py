"""Shared fixtures: a throwaway SQLite ledger and a mocked affiliate API."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app import models  # noqa: F401
from app.database import Base, build_engine
from app.models.creator import Creator, Link
from app.services.affiliate_feed_service import AffiliateFeedClient
from app.services.rate_limiter import AffiliateRateLimiter
from app.services.request_cache import RequestCoalescer


class SleepRecorder:
    """Stand-in for asyncio.sleep that returns immediately."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _impact_action(
    action_id: str,
    payout: Any = "10.00",
    status: Optional[str] = "APPROVED",
    subid: Optional[str] = "trk-a",
    event_date: str = "2025-01-05T10:00:00Z",
    amount: Any = "100.00",
) -> Dict[str, Any]:
    action = {
        "Id": action_id,
        "CampaignName": "Spring Sale",
        "ActionType": "SALE",
        "Payout": payout,
        "Amount": amount,
        "EventDate": event_date,
    }
    if status is not None:
        action["ActionStatus"] = status
    if subid is not None:
        action["SubId1"] = subid
    return action


def _actions_response(actions: List[Dict[str, Any]], page: int = 1, num_pages: int = 1) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "@page": str(page),
            "@numpages": str(num_pages),
            "@total": str(len(actions)),
            "Actions": actions,
        },
    )


@pytest.fixture
def impact_action():
    """Raw Impact.com action builder."""
    return _impact_action


@pytest.fixture
def actions_response():
    """Actions endpoint response builder."""
    return _actions_response


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_creator(db):
    async def _make(
        commission_rate: int = 70,
        external_tracking_id: Optional[str] = None,
        is_active: bool = True,
        name: str = "Test Creator",
    ) -> Creator:
        creator = Creator(
            id=uuid.uuid4(),
            name=name,
            email=f"{uuid.uuid4().hex[:10]}@example.com",
            commission_rate=commission_rate,
            external_tracking_id=external_tracking_id,
            is_active=is_active,
        )
        db.add(creator)
        await db.commit()
        return creator

    return _make


@pytest.fixture
def make_link(db):
    async def _make(
        creator: Creator,
        short_code: Optional[str] = None,
        clicks: int = 0,
        revenue: str = "0.00",
        created_at: Optional[datetime] = None,
    ) -> Link:
        link = Link(
            id=uuid.uuid4(),
            creator_id=creator.id,
            short_code=short_code or uuid.uuid4().hex[:8],
            destination_url="https://shop.example.com/product",
            clicks=clicks,
            conversions=0,
            revenue=Decimal(revenue),
            created_at=created_at or datetime.now(timezone.utc),
        )
        db.add(link)
        await db.commit()
        return link

    return _make


@pytest.fixture
async def feed_client_factory(sleep):
    """Build an AffiliateFeedClient whose HTTP calls go to `handler`."""
    http_clients: List[httpx.AsyncClient] = []

    def _make(
        handler: Callable[[httpx.Request], httpx.Response],
        max_retries: int = 2,
        account_sid: str = "IRtestSID",
        auth_token: str = "secret-token",
    ) -> AffiliateFeedClient:
        limiter = AffiliateRateLimiter(
            max_per_minute=10000,
            max_per_hour=100000,
            min_interval=0,
            sleep=sleep,
        )
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        http_clients.append(http_client)
        return AffiliateFeedClient(
            limiter,
            RequestCoalescer(),
            http_client=http_client,
            account_sid=account_sid,
            auth_token=auth_token,
            base_url="https://api.impact.test",
            max_retries=max_retries,
            backoff_seconds=1.0,
            sleep=sleep,
        )

    yield _make

    for http_client in http_clients:
        await http_client.aclose()
