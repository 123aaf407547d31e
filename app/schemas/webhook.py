"""Conversion webhook payload."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import Field, field_validator, model_validator

from app.core.money import to_decimal
from app.schemas.base import BaseInboundSchema


class WebhookEventType(str, Enum):
    CONVERSION = "CONVERSION"
    CLICK = "CLICK"


class WebhookEvent(BaseInboundSchema):
    """
    Conversion or click pushed by the affiliate network.

    The creator is identified by creator_id, link_id or short_code (first
    one present wins). A conversion without external_transaction_id cannot
    be deduplicated.
    """
    event_type: WebhookEventType = WebhookEventType.CONVERSION
    external_transaction_id: Optional[str] = Field(None, max_length=100)
    creator_id: Optional[UUID] = None
    link_id: Optional[UUID] = None
    short_code: Optional[str] = Field(None, max_length=32)
    amount: Optional[Decimal] = None
    sale_amount: Optional[Decimal] = None
    status: str = "PENDING"
    occurred_at: Optional[datetime] = None

    @field_validator("amount", "sale_amount", mode="before")
    @classmethod
    def quantize_money(cls, v):
        if v is None:
            return v
        return to_decimal(v)

    @field_validator("status", mode="before")
    @classmethod
    def upper_status(cls, v):
        return str(v).strip().upper() if v else "PENDING"

    @model_validator(mode="after")
    def check_routing(self):
        if not (self.creator_id or self.link_id or self.short_code):
            raise ValueError("One of creator_id, link_id or short_code is required")
        if self.event_type == WebhookEventType.CONVERSION and self.amount is None:
            raise ValueError("Conversion events require amount")
        return self
