"""
API Routes for the Product Provenance Ledger

Command-style endpoints (no PATCH, no PUT, no DELETE):
- POST /roles                                         - Assign a role (admin)
- POST /service-centers                               - Authorize a service center (admin)
- POST /products                                      - Register a product
- POST /products/{id}/transfer-to-retailer            - Manufacturer -> retailer
- POST /products/{id}/sell                            - Retailer -> customer
- POST /products/{id}/resell                          - Customer -> customer
- POST /products/{id}/visibility                      - Owner visibility preference
- POST /products/{id}/ownership/{seq}/visibility      - Hide/show one history record
- POST /products/{id}/claims                          - Submit a warranty claim
- POST /products/{id}/claims/{cid}/process            - Approve or reject a claim
- POST /products/{id}/claims/{cid}/visibility         - Hide/show one claim
- POST /products/{id}/service-log                     - Log a service action
- POST /products/{id}/warranty/refresh                - Materialize lazy expiry
- POST /products/{id}/warranty/revoke                 - Revoke a warranty (admin)

Query endpoints:
- GET /principals/{id}                  - Role and service center flag
- GET /principals/{id}/products         - Products currently owned
- GET /products/{id}                    - Product details (visibility filtered)
- GET /products/{id}/ownership          - Ownership history (visibility filtered)
- GET /products/{id}/ownership/verify   - Is the caller the current owner
- GET /products/{id}/claims             - Warranty history (visibility filtered)
- GET /products/{id}/warranty           - Warranty status
- GET /events                           - Audit log (admin)

Every request carries the calling principal in the X-Principal header.
Ledger errors are mapped to HTTP statuses by the handler in main.py.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from ..core.service import ProvenanceService
from ..schemas import (
    LedgerEvent,
    OwnershipRecord,
    Principal,
    Product,
    ProductDetails,
    Role,
    WarrantyClaim,
    WarrantyReport,
)
from .deps import get_caller, get_service


router = APIRouter()


# ============================================================
# Request/Response Models
# ============================================================

class AssignRoleRequest(BaseModel):
    principal: str
    role: Role


class ServiceCenterRequest(BaseModel):
    principal: str


class RegisterProductRequest(BaseModel):
    product_id: str
    serial_number: str
    model: str
    specifications: str = ""
    warranty_duration_days: int
    max_claims: int


class TransferRequest(BaseModel):
    """Transfer to another principal. The target's role must match the step."""
    to: str = Field(..., description="Receiving principal")
    details: str = ""


class VisibilityRequest(BaseModel):
    is_visible: bool


class SubmitClaimRequest(BaseModel):
    description: str


class ProcessClaimRequest(BaseModel):
    status: str = Field(..., description="approved or rejected")
    service_notes: str = ""


class ServiceLogRequest(BaseModel):
    description: str
    parts_replaced: str = ""


class RevokeWarrantyRequest(BaseModel):
    reason: Optional[str] = None


class ClaimCreatedResponse(BaseModel):
    product_id: str
    claim_id: int


class UserProductsResponse(BaseModel):
    principal_id: str
    products: list[str]


class OwnershipVerificationResponse(BaseModel):
    product_id: str
    principal_id: str
    is_owner: bool


# ============================================================
# Role Registry
# ============================================================

@router.post(
    "/roles",
    response_model=Principal,
    tags=["Roles"],
    summary="Assign a role to a principal",
)
def assign_role(
    request: AssignRoleRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.assign_role(caller, request.principal, request.role)


@router.post(
    "/service-centers",
    response_model=Principal,
    tags=["Roles"],
    summary="Authorize a service center",
)
def add_service_center(
    request: ServiceCenterRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.add_service_center(caller, request.principal)


@router.get("/principals/{principal_id}", response_model=Principal, tags=["Roles"])
def get_principal(
    principal_id: str,
    service: ProvenanceService = Depends(get_service),
):
    return service.get_principal(principal_id)


@router.get(
    "/principals/{principal_id}/products",
    response_model=UserProductsResponse,
    tags=["Queries"],
)
def get_user_products(
    principal_id: str,
    service: ProvenanceService = Depends(get_service),
):
    return UserProductsResponse(
        principal_id=principal_id,
        products=service.get_user_products(principal_id),
    )


# ============================================================
# Product Ledger
# ============================================================

@router.post(
    "/products",
    response_model=Product,
    status_code=status.HTTP_201_CREATED,
    tags=["Products"],
    summary="Register a new product",
)
def register_product(
    request: RegisterProductRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    """
    Register a product owned by the calling manufacturer.

    Products are never deleted. Registering an existing product_id fails
    with 409 and leaves the existing record untouched.
    """
    return service.register_product(
        caller,
        request.product_id,
        request.serial_number,
        request.model,
        request.specifications,
        request.warranty_duration_days,
        request.max_claims,
    )


@router.post("/products/{product_id}/transfer-to-retailer", response_model=Product, tags=["Products"])
def transfer_to_retailer(
    product_id: str,
    request: TransferRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.transfer_to_retailer(caller, product_id, request.to, request.details)


@router.post("/products/{product_id}/sell", response_model=Product, tags=["Products"])
def sell_to_customer(
    product_id: str,
    request: TransferRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    """Retail sale to a customer. An active warranty restarts at the sale."""
    return service.sell_to_customer(caller, product_id, request.to, request.details)


@router.post("/products/{product_id}/resell", response_model=Product, tags=["Products"])
def resell_product(
    product_id: str,
    request: TransferRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.resell_product(caller, product_id, request.to, request.details)


@router.post("/products/{product_id}/visibility", response_model=Product, tags=["Products"])
def set_product_visibility(
    product_id: str,
    request: VisibilityRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.set_product_visibility(caller, product_id, request.is_visible)


@router.post(
    "/products/{product_id}/ownership/{sequence}/visibility",
    response_model=OwnershipRecord,
    tags=["Products"],
)
def set_ownership_record_visibility(
    product_id: str,
    sequence: int,
    request: VisibilityRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.set_ownership_record_visibility(caller, product_id, sequence, request.is_visible)


# ============================================================
# Claims
# ============================================================

@router.post(
    "/products/{product_id}/claims",
    response_model=ClaimCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Claims"],
    summary="Submit a warranty claim",
)
def submit_warranty_claim(
    product_id: str,
    request: SubmitClaimRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    claim_id = service.submit_warranty_claim(caller, product_id, request.description)
    return ClaimCreatedResponse(product_id=product_id, claim_id=claim_id)


@router.post(
    "/products/{product_id}/claims/{claim_id}/process",
    response_model=WarrantyClaim,
    tags=["Claims"],
)
def process_warranty_claim(
    product_id: str,
    claim_id: int,
    request: ProcessClaimRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.process_warranty_claim(
        caller, product_id, claim_id, request.status, request.service_notes
    )


@router.post(
    "/products/{product_id}/claims/{claim_id}/visibility",
    response_model=WarrantyClaim,
    tags=["Claims"],
)
def set_claim_visibility(
    product_id: str,
    claim_id: int,
    request: VisibilityRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.set_claim_visibility(caller, product_id, claim_id, request.is_visible)


@router.post(
    "/products/{product_id}/service-log",
    response_model=ClaimCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Claims"],
)
def log_service_action(
    product_id: str,
    request: ServiceLogRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    claim_id = service.log_service_action(
        caller, product_id, request.description, request.parts_replaced
    )
    return ClaimCreatedResponse(product_id=product_id, claim_id=claim_id)


# ============================================================
# Warranty
# ============================================================

@router.get("/products/{product_id}/warranty", response_model=WarrantyReport, tags=["Warranty"])
def check_warranty_status(
    product_id: str,
    service: ProvenanceService = Depends(get_service),
):
    return service.check_warranty_status(product_id)


@router.post("/products/{product_id}/warranty/refresh", response_model=WarrantyReport, tags=["Warranty"])
def update_warranty_status(
    product_id: str,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.update_warranty_status(caller, product_id)


@router.post("/products/{product_id}/warranty/revoke", response_model=WarrantyReport, tags=["Warranty"])
def revoke_warranty(
    product_id: str,
    request: RevokeWarrantyRequest,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.revoke_warranty(caller, product_id, request.reason)


# ============================================================
# Queries
# ============================================================

@router.get("/products/{product_id}", response_model=ProductDetails, tags=["Queries"])
def get_product_details(
    product_id: str,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.get_product_details(caller, product_id)


@router.get("/products/{product_id}/ownership", response_model=list[OwnershipRecord], tags=["Queries"])
def get_ownership_history(
    product_id: str,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.get_ownership_history(caller, product_id)


@router.get(
    "/products/{product_id}/ownership/verify",
    response_model=OwnershipVerificationResponse,
    tags=["Queries"],
)
def verify_product_ownership(
    product_id: str,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return OwnershipVerificationResponse(
        product_id=product_id,
        principal_id=caller,
        is_owner=service.verify_product_ownership(caller, product_id),
    )


@router.get("/products/{product_id}/claims", response_model=list[WarrantyClaim], tags=["Queries"])
def get_warranty_history(
    product_id: str,
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    return service.get_warranty_history(caller, product_id)


@router.get("/events", response_model=list[LedgerEvent], tags=["Audit"])
def get_audit_log(
    entity_id: Optional[str] = Query(None, description="Only events for this product or principal"),
    caller: str = Depends(get_caller),
    service: ProvenanceService = Depends(get_service),
):
    """The hash-chained audit log, in sequence order (admin only)."""
    return service.get_audit_log(caller, entity_id)
