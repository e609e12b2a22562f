# Canonical Schemas for the Product Provenance Ledger

from .principal import Principal, Role
from .product import (
    Product,
    ProductDetails,
    WarrantyInfo,
    WarrantyReport,
    WarrantyStatus,
)
from .history import OwnershipRecord, INITIAL_MANUFACTURING
from .claim import ClaimStatus, WarrantyClaim, PROCESSING_OUTCOMES
from .events import (
    LedgerEvent,
    EventType,
    RoleAssignedPayload,
    ProductRegisteredPayload,
    OwnershipTransferredPayload,
    VisibilityChangedPayload,
    WarrantyStatusChangedPayload,
    WarrantyClaimSubmittedPayload,
    WarrantyClaimProcessedPayload,
    ServiceActionLoggedPayload,
)

__all__ = [
    # Principal
    "Principal",
    "Role",
    # Product
    "Product",
    "ProductDetails",
    "WarrantyInfo",
    "WarrantyReport",
    "WarrantyStatus",
    # History
    "OwnershipRecord",
    "INITIAL_MANUFACTURING",
    # Claims
    "ClaimStatus",
    "WarrantyClaim",
    "PROCESSING_OUTCOMES",
    # Events
    "LedgerEvent",
    "EventType",
    "RoleAssignedPayload",
    "ProductRegisteredPayload",
    "OwnershipTransferredPayload",
    "VisibilityChangedPayload",
    "WarrantyStatusChangedPayload",
    "WarrantyClaimSubmittedPayload",
    "WarrantyClaimProcessedPayload",
    "ServiceActionLoggedPayload",
]
