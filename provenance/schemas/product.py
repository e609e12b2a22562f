"""
Canonical Product Schema

A Product is registered once and never deleted.
Provenance records must be permanent.
"""

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class WarrantyStatus(str, Enum):
    """
    Stored warranty states.

    ACTIVE -> EXPIRED can also be derived lazily from the clock.
    CLAIM_LIMIT_REACHED and REVOKED are only ever written explicitly.
    """
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    CLAIM_LIMIT_REACHED = "claim_limit_reached"


class WarrantyInfo(BaseModel):
    """
    Warranty terms embedded in a Product.

    The clock starts at manufacture and is reset once, when a retailer
    sells the product to its first customer.
    """
    start_date: datetime
    duration_seconds: int = Field(..., gt=0)
    max_claims: int = Field(..., ge=0)
    used_claims: int = Field(default=0, ge=0)
    status: WarrantyStatus = WarrantyStatus.ACTIVE

    @model_validator(mode="after")
    def used_within_limit(self) -> "WarrantyInfo":
        if self.used_claims > self.max_claims:
            raise ValueError("used_claims cannot exceed max_claims")
        return self

    @property
    def expiry_date(self) -> datetime:
        return self.start_date + timedelta(seconds=self.duration_seconds)

    @property
    def remaining_claims(self) -> int:
        return self.max_claims - self.used_claims


class Product(BaseModel):
    """
    The canonical product record, owned by the product ledger.

    product_id, manufacturer and manufactured_at never change after
    registration. version is bumped on every committed write and is used
    for compare-and-swap by the state store.
    """
    product_id: str = Field(..., min_length=1)
    serial_number: str
    model: str
    specifications: str = ""

    manufacturer: str
    current_owner: str
    manufactured_at: datetime

    warranty: WarrantyInfo

    # Owner-level opt-out for third-party reads
    is_visible: bool = True

    version: int = Field(default=0, ge=0)


class WarrantyReport(BaseModel):
    """Result of a warranty status check."""
    product_id: str
    status: WarrantyStatus = Field(
        ...,
        description="Effective status, with lazy expiry applied"
    )
    stored_status: WarrantyStatus
    start_date: datetime
    expiry_date: datetime
    used_claims: int
    max_claims: int
    remaining_claims: int


class ProductDetails(BaseModel):
    """
    Caller-specific view of a product.

    serial_number and specifications are masked for third parties
    when the owner has opted out of visibility.
    """
    product_id: str
    serial_number: str
    model: str
    specifications: str
    manufacturer: str
    current_owner: str
    manufactured_at: datetime
    warranty: WarrantyReport
    is_visible: bool
