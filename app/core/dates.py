"""Date helpers shared by the feed client, ledger and analytics.

All timestamps are handled as timezone-aware UTC. SQLite hands back naive
datetimes, so values read from the database pass through ensure_utc().
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional, Tuple, Union

from dateutil.relativedelta import relativedelta

DateLike = Union[date, datetime, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_date(value: DateLike) -> date:
    """Coerce a date, datetime or YYYY-MM-DD string to a date."""
    if isinstance(value, datetime):
        return ensure_utc(value).date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip()[:10])
    raise ValueError(f"Unsupported date value: {value!r}")


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 timestamp from the affiliate API into UTC."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def format_impact_date(value: DateLike) -> str:
    """Impact.com expects MM/DD/YYYY."""
    return to_date(value).strftime("%m/%d/%Y")


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Inclusive-start, exclusive-end UTC bounds for a calendar day."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every date from start to end inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def add_months(value: date, months: int) -> date:
    return value + relativedelta(months=months)


def yesterday() -> date:
    return utc_now().date() - timedelta(days=1)
