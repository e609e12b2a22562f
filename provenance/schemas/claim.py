"""
Canonical Warranty Claim Schema

Claims are scoped to a product. claim_id is the claim's position in the
product's claim list, so (product_id, claim_id) is the global key.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ClaimStatus(str, Enum):
    """
    Pending -> Approved | Rejected. Both are terminal.
    Completed is only reached by logging a service action directly.
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


# Outcomes a service center may choose when processing a pending claim
PROCESSING_OUTCOMES = (ClaimStatus.APPROVED, ClaimStatus.REJECTED)


class WarrantyClaim(BaseModel):
    """
    A customer claim or a routine service log entry.
    """
    claim_id: int = Field(..., ge=0)
    product_id: str

    customer: str
    service_center: str = Field(
        default="",
        description="Empty until the claim is processed"
    )

    description: str
    service_notes: str = ""

    submitted_at: datetime
    processed_at: Optional[datetime] = None

    status: ClaimStatus = ClaimStatus.PENDING
    is_visible: bool = True

    @property
    def is_pending(self) -> bool:
        return self.status == ClaimStatus.PENDING
