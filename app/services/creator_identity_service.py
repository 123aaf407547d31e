"""
Creator identity resolution for affiliate data.

Every affiliate action carries the creator's tracking id in SubId1. This
service maps tracking ids to creators and makes sure one creator's data is
never attributed to another. All filters fail closed: anything that cannot
be positively matched is dropped.
"""
import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from app.config import settings
from app.core.exceptions import ValidationError
from app.models.creator import Creator
from app.schemas.affiliate import INVALID_TRACKING_IDS, ExternalTransaction

logger = logging.getLogger(__name__)


class TrackingIdSource(str, Enum):
    STORED = "STORED"
    COMPUTED = "COMPUTED"


@dataclass
class TrackingIdResolution:
    tracking_id: str
    source: TrackingIdSource
    creator_id: uuid.UUID


def _is_valid_tracking_id(value: Optional[str]) -> bool:
    return bool(value) and str(value).strip().lower() not in INVALID_TRACKING_IDS


class CreatorIdentityResolver:
    """Resolve and enforce creator tracking ids."""

    def __init__(self, secret: Optional[str] = None, length: Optional[int] = None):
        self.secret = (secret or settings.TRACKING_ID_SECRET).encode("utf-8")
        self.length = length or settings.TRACKING_ID_LENGTH

    def compute_tracking_id(self, creator_id: uuid.UUID) -> str:
        """Deterministic tracking id derived from the creator id."""
        digest = hmac.new(self.secret, str(creator_id).encode("utf-8"), hashlib.sha256)
        return digest.hexdigest()[: self.length]

    def resolve_tracking_id(self, creator: Creator) -> TrackingIdResolution:
        """
        Stored external_tracking_id wins; otherwise compute one and warn,
        since links generated before the id was stored may not carry it.
        """
        if creator is None or creator.id is None:
            raise ValidationError("Invalid creator data")

        if creator.external_tracking_id:
            tracking_id = creator.external_tracking_id
            source = TrackingIdSource.STORED
        else:
            tracking_id = self.compute_tracking_id(creator.id)
            source = TrackingIdSource.COMPUTED
            logger.warning(
                f"No stored tracking id for creator {creator.id}, using computed value"
            )

        if not _is_valid_tracking_id(tracking_id):
            raise ValidationError(
                f"Invalid tracking id: {tracking_id!r}",
                {"creator_id": creator.id},
            )

        return TrackingIdResolution(str(tracking_id).strip(), source, creator.id)

    def filter_transactions_for_creator(
        self,
        transactions: Sequence[ExternalTransaction],
        expected_tracking_id: Optional[str],
        creator_id: Optional[uuid.UUID],
    ) -> List[ExternalTransaction]:
        """Keep only transactions whose tracking id exactly matches."""
        if not transactions:
            return []
        if not expected_tracking_id or not creator_id:
            logger.error(
                f"Refusing to filter transactions without tracking id/creator "
                f"(tracking_id={expected_tracking_id!r}, creator_id={creator_id})"
            )
            return []

        expected = expected_tracking_id.strip()
        kept = []
        for tx in transactions:
            if not isinstance(tx, ExternalTransaction) or not tx.has_valid_tracking_id:
                continue
            if tx.tracking_id.strip() == expected:
                kept.append(tx)
            else:
                logger.debug(f"Dropping action {tx.external_id} with tracking id {tx.tracking_id!r}")

        blocked = len(transactions) - len(kept)
        if blocked:
            logger.warning(f"Blocked {blocked} actions that do not belong to creator {creator_id}")
        return kept

    def build_tracking_index(self, creators: Iterable[Creator]) -> Dict[str, Creator]:
        """
        tracking id -> creator for the pull sync.

        A tracking id claimed by more than one creator is left out entirely.
        """
        index: Dict[str, Creator] = {}
        duplicates = set()
        for creator in creators:
            try:
                resolution = self.resolve_tracking_id(creator)
            except ValidationError as e:
                logger.warning(f"Skipping creator {creator.id}: {e}")
                continue
            if resolution.tracking_id in index:
                duplicates.add(resolution.tracking_id)
                continue
            index[resolution.tracking_id] = creator

        for tracking_id in duplicates:
            logger.error(f"Tracking id {tracking_id!r} is shared by several creators, ignoring it")
            index.pop(tracking_id, None)
        return index

    def filter_commissionable(
        self,
        transactions: Iterable[ExternalTransaction],
    ) -> List[ExternalTransaction]:
        """Actions with a positive network commission."""
        return [tx for tx in transactions if tx.gross_amount > 0]

    def validate_earnings_ownership(self, earnings: Iterable, creator_id: uuid.UUID) -> List:
        """Drop ledger rows that do not belong to creator_id."""
        earnings = list(earnings)
        owned = [e for e in earnings if getattr(e, "creator_id", None) == creator_id]
        if len(owned) != len(earnings):
            logger.error(
                f"Blocked {len(earnings) - len(owned)} earnings not owned by creator {creator_id}"
            )
        return owned
