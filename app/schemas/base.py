"""
Base Schema Classes for Pydantic Models

RULE: Inbound payload schemas inherit from BaseInboundSchema so unknown
fields from upstream systems are ignored rather than rejected.
"""

from pydantic import BaseModel, ConfigDict


class BaseInboundSchema(BaseModel):
    """
    Base class for payloads received from outside the ledger
    (affiliate API actions, conversion webhooks).
    """
    model_config = ConfigDict(
        # Upstream adds fields over time (forward compatibility)
        extra='ignore',
        # Transient records, never mutated after validation
        frozen=True,
        populate_by_name=True,
    )
