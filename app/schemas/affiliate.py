"""
Affiliate feed schemas.

`parse_action()` is the single adapter between the Impact.com Actions
payload (PascalCase, loosely typed) and the validated ExternalTransaction
used everywhere else. Anything it cannot interpret raises ValidationError.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from app.core.dates import parse_timestamp
from app.core.exceptions import ValidationError
from app.core.money import to_decimal
from app.schemas.base import BaseInboundSchema


class ExternalStatus(str, Enum):
    """Normalized affiliate action status."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVERSED = "REVERSED"


# Raw ActionStatus values seen from Impact.com
RAW_STATUS_MAP = {
    "PENDING": ExternalStatus.PENDING,
    "LOCKED": ExternalStatus.PENDING,
    "APPROVED": ExternalStatus.APPROVED,
    "CONFIRMED": ExternalStatus.APPROVED,
    "REJECTED": ExternalStatus.REJECTED,
    "REVERSED": ExternalStatus.REVERSED,
}

INVALID_TRACKING_IDS = {"", "default", "null", "undefined", "none"}


class ExternalTransaction(BaseInboundSchema):
    """One affiliate action after validation."""
    external_id: str = Field(..., min_length=1, max_length=100)
    gross_amount: Decimal  # network commission, the split base
    sale_amount: Optional[Decimal] = None
    tracking_id: Optional[str] = None
    event_timestamp: datetime
    status: ExternalStatus
    raw_status: str
    action_type: Optional[str] = None
    campaign_name: Optional[str] = None

    @field_validator("gross_amount", "sale_amount", mode="before")
    @classmethod
    def quantize_money(cls, v):
        if v is None:
            return v
        return to_decimal(v)

    @field_validator("event_timestamp", mode="before")
    @classmethod
    def parse_event_timestamp(cls, v):
        return parse_timestamp(v)

    @property
    def has_valid_tracking_id(self) -> bool:
        return bool(self.tracking_id) and self.tracking_id.strip().lower() not in INVALID_TRACKING_IDS


@dataclass
class DateRange:
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValidationError(
                "Date range start is after end",
                {"start": self.start.isoformat(), "end": self.end.isoformat()},
            )

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def as_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class ActionFilters:
    """Optional server-side filters for the Actions endpoint."""
    status: Optional[str] = None
    action_type: Optional[str] = None
    tracking_id: Optional[str] = None


@dataclass
class FeedPage:
    """One page of the Actions feed."""
    items: List[ExternalTransaction]
    page: int
    total_pages: int
    total_results: int
    invalid_items: List[ValidationError] = field(default_factory=list)
    degraded: bool = False

    @property
    def is_last(self) -> bool:
        return self.page >= self.total_pages or not (self.items or self.invalid_items)


def _first_present(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_action(raw: Any) -> ExternalTransaction:
    """
    Convert one raw Impact.com action into an ExternalTransaction.

    Required: Id, EventDate, ActionStatus, and Payout or Commission.
    SubId1 is optional here; the identity resolver decides what to do
    with actions that have none.
    """
    if not isinstance(raw, dict):
        raise ValidationError("Action is not an object", {"type": type(raw).__name__})

    external_id = _first_present(raw, "Id", "ActionId")
    context = {"external_id": external_id}
    if external_id is None:
        raise ValidationError("Action is missing Id", context)

    raw_status = _first_present(raw, "ActionStatus", "State", "Status")
    if raw_status is None:
        raise ValidationError("Action is missing ActionStatus", context)
    raw_status = str(raw_status).strip().upper()
    status = RAW_STATUS_MAP.get(raw_status)
    if status is None:
        raise ValidationError(f"Unknown action status: {raw_status}", context)

    gross = _first_present(raw, "Payout", "Commission")
    if gross is None:
        raise ValidationError("Action has no Payout or Commission", context)

    event_date = _first_present(raw, "EventDate", "CreationDate")
    if event_date is None:
        raise ValidationError("Action is missing EventDate", context)

    tracking_id = _first_present(raw, "SubId1")
    if tracking_id is not None:
        tracking_id = str(tracking_id).strip() or None

    try:
        return ExternalTransaction(
            external_id=str(external_id),
            gross_amount=gross,
            sale_amount=_first_present(raw, "Amount", "SaleAmount"),
            tracking_id=tracking_id,
            event_timestamp=event_date,
            status=status,
            raw_status=raw_status,
            action_type=_first_present(raw, "ActionType", "Type"),
            campaign_name=_first_present(raw, "CampaignName"),
        )
    except (PydanticValidationError, ValueError) as e:
        raise ValidationError(f"Invalid action payload: {e}", context) from e
