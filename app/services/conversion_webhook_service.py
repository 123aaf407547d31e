"""
Conversion Webhook Service

Handles conversion and click events pushed by the affiliate network. A
conversion is recorded through the same LedgerWriter path as the pull sync,
so rate locking, snapshots and referral bonuses behave identically.
Redelivered conversions (same external_transaction_id) are no-ops.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dates import utc_now
from app.core.exceptions import ValidationError
from app.core.money import to_decimal
from app.models.creator import Creator, Link
from app.models.earning import SnapshotSource
from app.schemas.affiliate import RAW_STATUS_MAP, ExternalStatus, ExternalTransaction
from app.schemas.webhook import WebhookEvent, WebhookEventType
from app.services.commission_calculator import map_external_status
from app.services.ledger_writer import LedgerWriter, WriteAction

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    status: str  # ACCEPTED | DUPLICATE
    event_type: str
    earning_id: Optional[uuid.UUID] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "event_type": self.event_type,
            "earning_id": str(self.earning_id) if self.earning_id else None,
            "message": self.message,
        }


class ConversionWebhookService:
    """Service for inbound conversion/click webhooks."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = LedgerWriter(db)

    async def _resolve(self, event: WebhookEvent) -> Tuple[Creator, Optional[Link]]:
        link = None
        if event.link_id:
            link = await self.db.get(Link, event.link_id)
        elif event.short_code:
            result = await self.db.execute(select(Link).where(Link.short_code == event.short_code))
            link = result.scalar_one_or_none()

        if (event.link_id or event.short_code) and link is None:
            raise ValidationError(
                "Link not found",
                {"link_id": event.link_id, "short_code": event.short_code},
            )

        if event.creator_id and link is not None and link.creator_id != event.creator_id:
            raise ValidationError(
                "Link does not belong to creator",
                {"link_id": link.id, "creator_id": event.creator_id},
            )

        creator_id = link.creator_id if link is not None else event.creator_id
        creator = await self.db.get(Creator, creator_id)
        if creator is None:
            raise ValidationError("Creator not found", {"creator_id": creator_id})
        return creator, link

    async def process_event(self, payload: Union[Dict[str, Any], WebhookEvent]) -> WebhookResult:
        """Validate and apply one webhook event."""
        if isinstance(payload, WebhookEvent):
            event = payload
        else:
            try:
                event = WebhookEvent.model_validate(payload)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid webhook payload: {e}") from e

        creator, link = await self._resolve(event)

        if event.event_type == WebhookEventType.CLICK:
            return await self._record_click(event, link)
        return await self._record_conversion(event, creator, link)

    async def _record_click(self, event: WebhookEvent, link: Optional[Link]) -> WebhookResult:
        if link is None:
            raise ValidationError("Click events require link_id or short_code")
        link.clicks = (link.clicks or 0) + 1
        await self.db.commit()
        return WebhookResult("ACCEPTED", event.event_type.value, message=f"Click on {link.short_code}")

    async def _record_conversion(
        self,
        event: WebhookEvent,
        creator: Creator,
        link: Optional[Link],
    ) -> WebhookResult:
        earned_at = event.occurred_at or utc_now()
        link_id = link.id if link is not None else None

        if event.external_transaction_id:
            existing = await self.ledger.get_by_external_id(event.external_transaction_id)
            if existing is not None:
                logger.info(f"Webhook conversion {event.external_transaction_id} already processed")
                return WebhookResult(
                    "DUPLICATE", event.event_type.value, existing.id, "Already processed"
                )

            transaction = ExternalTransaction(
                external_id=event.external_transaction_id,
                gross_amount=event.amount,
                sale_amount=event.sale_amount,
                event_timestamp=earned_at,
                status=RAW_STATUS_MAP.get(event.status, ExternalStatus.PENDING),
                raw_status=event.status,
            )
            earning, action = await self.ledger.upsert_earning(
                transaction, creator, SnapshotSource.WEBHOOK, link_id
            )
            if action != WriteAction.CREATED:
                return WebhookResult(
                    "DUPLICATE", event.event_type.value, earning.id, "Already processed"
                )
        else:
            logger.warning(
                f"Webhook conversion for creator {creator.id} has no transaction id; "
                f"it cannot be deduplicated"
            )
            earning = await self.ledger.create_earning(
                creator=creator,
                gross_amount=event.amount,
                earned_at=earned_at,
                status=map_external_status(event.status),
                source=SnapshotSource.WEBHOOK,
                link_id=link_id,
            )

        if link is not None:
            link.conversions = (link.conversions or 0) + 1
            link.revenue = to_decimal(link.revenue or 0) + to_decimal(event.amount)
            await self.db.commit()

        return WebhookResult("ACCEPTED", event.event_type.value, earning.id, "Conversion recorded")
