"""
Canonical Event Schema

Every state change in the ledger is also recorded as an audit event.
The events are committed in the same transaction as the state they
describe, hashed and chained to the previous event.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .claim import ClaimStatus
from .principal import Role
from .product import WarrantyStatus


class EventType(str, Enum):
    """
    All possible event types.
    You can add more later, never remove.
    """
    ROLE_ASSIGNED = "ROLE_ASSIGNED"

    PRODUCT_REGISTERED = "PRODUCT_REGISTERED"
    OWNERSHIP_TRANSFERRED = "OWNERSHIP_TRANSFERRED"
    VISIBILITY_CHANGED = "VISIBILITY_CHANGED"

    WARRANTY_STATUS_CHANGED = "WARRANTY_STATUS_CHANGED"
    WARRANTY_CLAIM_SUBMITTED = "WARRANTY_CLAIM_SUBMITTED"
    WARRANTY_CLAIM_PROCESSED = "WARRANTY_CLAIM_PROCESSED"
    SERVICE_ACTION_LOGGED = "SERVICE_ACTION_LOGGED"


# ============================================================
# Event Payloads
# ============================================================

class RoleAssignedPayload(BaseModel):
    """Payload for ROLE_ASSIGNED."""
    principal_id: str
    role: Role
    is_service_center: bool
    schema_version: int = 1


class ProductRegisteredPayload(BaseModel):
    """
    Payload for PRODUCT_REGISTERED.
    The warranty terms are recorded so the audit trail shows what was promised.
    """
    product_id: str
    manufacturer: str
    serial_number: str
    model: str
    warranty_duration_seconds: int
    max_claims: int
    schema_version: int = 1


class OwnershipTransferredPayload(BaseModel):
    """Payload for OWNERSHIP_TRANSFERRED."""
    product_id: str
    from_owner: str
    to_owner: str
    from_role: Role
    to_role: Role
    details: str = ""
    schema_version: int = 1


class VisibilityChangedPayload(BaseModel):
    """
    Payload for VISIBILITY_CHANGED.

    target is "product", "ownership_record" or "claim"; index is the
    record sequence or claim id and is None for the product itself.
    """
    product_id: str
    target: str
    index: Optional[int] = None
    is_visible: bool
    schema_version: int = 1


class WarrantyStatusChangedPayload(BaseModel):
    """Payload for WARRANTY_STATUS_CHANGED."""
    product_id: str
    previous_status: WarrantyStatus
    new_status: WarrantyStatus
    reason: Optional[str] = None
    schema_version: int = 1


class WarrantyClaimSubmittedPayload(BaseModel):
    """Payload for WARRANTY_CLAIM_SUBMITTED."""
    product_id: str
    claim_id: int
    customer: str
    schema_version: int = 1


class WarrantyClaimProcessedPayload(BaseModel):
    """Payload for WARRANTY_CLAIM_PROCESSED."""
    product_id: str
    claim_id: int
    status: ClaimStatus
    service_center: str
    schema_version: int = 1


class ServiceActionLoggedPayload(BaseModel):
    """Payload for SERVICE_ACTION_LOGGED."""
    product_id: str
    claim_id: int
    service_center: str
    customer: str
    schema_version: int = 1


# ============================================================
# The Core Event Object
# ============================================================

class LedgerEvent(BaseModel):
    """
    The immutable audit record.

    Chain Integrity Rules:
    - sequence_number is monotonically increasing (0, 1, 2, ...)
    - previous_event_hash is None for sequence 0 only
    - event_hash is verifiable from payload + previous_event_hash
    """
    event_id: UUID
    sequence_number: int = Field(..., ge=0)
    event_type: EventType

    # Product id or principal id, depending on entity_type
    entity_id: str
    entity_type: str = Field(
        ...,
        description="Type of entity: 'product' or 'principal'"
    )

    payload: dict[str, Any]

    previous_event_hash: Optional[str] = None
    event_hash: str

    created_by: str = Field(
        ...,
        description="Principal whose action produced this event"
    )
    created_at: datetime

    @property
    def is_genesis(self) -> bool:
        return self.sequence_number == 0

    def validate_chain_rules(self) -> None:
        """
        Validate chain integrity rules.

        Raises ValueError if rules are violated.
        """
        if self.sequence_number == 0:
            if self.previous_event_hash is not None:
                raise ValueError(
                    f"Genesis event (sequence 0) must have previous_event_hash=None, "
                    f"got: {self.previous_event_hash}"
                )
        else:
            if self.previous_event_hash is None:
                raise ValueError(
                    f"Non-genesis event (sequence {self.sequence_number}) must have "
                    f"previous_event_hash set, got None"
                )
            if len(self.previous_event_hash) != 64:
                raise ValueError(
                    f"previous_event_hash must be 64 hex characters, "
                    f"got {len(self.previous_event_hash)}"
                )
