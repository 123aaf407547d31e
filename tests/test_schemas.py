"""Tests for inbound payload parsing and the money/date helpers."""
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from app.core.dates import add_months, day_bounds, format_impact_date, iter_days, parse_timestamp
from app.core.exceptions import ValidationError
from app.core.money import from_cents, percent_of_cents, to_cents, to_decimal
from app.schemas.affiliate import DateRange, ExternalStatus, FeedPage, parse_action


class TestParseAction:

    def test_full_action(self):
        tx = parse_action({
            "Id": "1000.2000.3000",
            "ActionStatus": "locked",
            "Payout": "4.2",
            "Amount": "42",
            "EventDate": "2025-01-05T10:00:00-05:00",
            "SubId1": " trk-a ",
            "ActionType": "SALE",
            "UnknownField": "ignored",
        })
        assert tx.external_id == "1000.2000.3000"
        assert tx.status == ExternalStatus.PENDING
        assert tx.raw_status == "LOCKED"
        assert tx.gross_amount == Decimal("4.20")
        assert tx.sale_amount == Decimal("42.00")
        assert tx.tracking_id == "trk-a"
        assert tx.event_timestamp == datetime(2025, 1, 5, 15, tzinfo=timezone.utc)

    def test_commission_and_creation_date_aliases(self):
        tx = parse_action({
            "ActionId": "A",
            "State": "APPROVED",
            "Commission": 3,
            "CreationDate": "2025-01-05T10:00:00Z",
        })
        assert tx.gross_amount == Decimal("3.00")
        assert tx.tracking_id is None
        assert tx.has_valid_tracking_id is False

    @pytest.mark.parametrize("missing", ["Id", "ActionStatus", "Payout", "EventDate"])
    def test_required_fields(self, missing):
        raw = {
            "Id": "A",
            "ActionStatus": "APPROVED",
            "Payout": "1.00",
            "EventDate": "2025-01-05T10:00:00Z",
        }
        del raw[missing]
        with pytest.raises(ValidationError):
            parse_action(raw)

    def test_unknown_status_is_invalid(self):
        with pytest.raises(ValidationError):
            parse_action({"Id": "A", "ActionStatus": "WEIRD", "Payout": "1", "EventDate": "2025-01-05"})

    def test_bad_amount_is_invalid(self):
        with pytest.raises(ValidationError):
            parse_action({"Id": "A", "ActionStatus": "APPROVED", "Payout": "abc",
                          "EventDate": "2025-01-05T10:00:00Z"})

    def test_non_object_is_invalid(self):
        with pytest.raises(ValidationError):
            parse_action(["not", "an", "action"])


class TestDateRangeAndPages:

    def test_inverted_range(self):
        with pytest.raises(ValidationError):
            DateRange(date(2025, 2, 1), date(2025, 1, 1))

    def test_single_day_range(self):
        assert DateRange(date(2025, 1, 1), date(2025, 1, 1)).days == 1

    def test_empty_page_is_last(self):
        assert FeedPage(items=[], page=1, total_pages=5, total_results=0).is_last is True


class TestMoneyAndDates:

    def test_cents_conversion(self):
        assert to_cents("12.345") == 1235
        assert from_cents(1235) == Decimal("12.35")
        assert to_decimal(1) == Decimal("1.00")

    def test_percent_rounds_half_up(self):
        assert percent_of_cents(5, 70) == 4
        assert percent_of_cents(-5, 70) == -4

    def test_invalid_amount(self):
        with pytest.raises(ValueError):
            to_decimal("twelve")

    def test_impact_date_format(self):
        assert format_impact_date(date(2025, 3, 7)) == "03/07/2025"

    def test_day_bounds_are_utc(self):
        start, end = day_bounds(date(2025, 1, 5))
        assert start == datetime(2025, 1, 5, tzinfo=timezone.utc)
        assert end == datetime(2025, 1, 6, tzinfo=timezone.utc)

    def test_iter_days_inclusive(self):
        assert len(list(iter_days(date(2025, 1, 1), date(2025, 1, 10)))) == 10

    def test_add_months_clamps_month_end(self):
        assert add_months(date(2025, 8, 31), 6) == date(2026, 2, 28)

    def test_parse_timestamp_z_suffix(self):
        assert parse_timestamp("2025-01-05T10:00:00Z").tzinfo is not None
