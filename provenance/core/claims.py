"""
Claim Workflow

Claim state machine:

    PENDING -> APPROVED | REJECTED   (processed exactly once by a service center)
    COMPLETED                        (service log entries, created directly)

claim_id is the claim's position in the product's claim list.
"""

from typing import Union

from ..db.store import StoreTransaction, product_key
from ..observability import get_logger
from ..schemas import (
    PROCESSING_OUTCOMES,
    ClaimStatus,
    EventType,
    ServiceActionLoggedPayload,
    VisibilityChangedPayload,
    WarrantyClaim,
    WarrantyClaimProcessedPayload,
    WarrantyClaimSubmittedPayload,
    WarrantyStatus,
)
from .clock import Clock, utc_now
from .errors import InvalidArgumentError, InvalidStateError, NotFoundError
from .ledger import load_product, require_owner
from .registry import RoleRegistry
from .transactions import TransactionRunner, stage_event
from .warranty import WarrantyEngine

logger = get_logger(__name__)


def load_claim(txn: StoreTransaction, product_id: str, claim_id: int) -> WarrantyClaim:
    claims = txn.get_claims(product_id)
    if not 0 <= claim_id < len(claims):
        raise NotFoundError(f"Claim {claim_id} of {product_id} not found")
    return claims[claim_id]


def parse_outcome(new_status: Union[ClaimStatus, str]) -> ClaimStatus:
    try:
        outcome = ClaimStatus(new_status)
    except ValueError:
        outcome = None
    if outcome not in PROCESSING_OUTCOMES:
        raise InvalidArgumentError(
            f"Claims can only be approved or rejected, not {new_status!r}"
        )
    return outcome


class ClaimWorkflow:
    """Warranty claims and service history."""

    def __init__(
        self,
        runner: TransactionRunner,
        registry: RoleRegistry,
        warranty: WarrantyEngine,
        clock: Clock = utc_now,
    ):
        self._runner = runner
        self._registry = registry
        self._warranty = warranty
        self._clock = clock

    def submit_warranty_claim(self, caller: str, product_id: str, description: str) -> int:
        """
        Open a pending claim against the caller's own product.

        The warranty must be effectively active at submission time; a
        stored ACTIVE status past its expiry date does not count.
        """
        def operation(txn: StoreTransaction) -> int:
            self._registry.require_role(txn, caller, "submit_warranty_claim")
            product = load_product(txn, product_id)
            require_owner(product, caller)

            now = self._clock()
            WarrantyEngine.ensure_claimable(product.warranty, now)

            claim_id = len(txn.get_claims(product_id))
            txn.append_claim(product_id, WarrantyClaim(
                claim_id=claim_id,
                product_id=product_id,
                customer=caller,
                description=description,
                submitted_at=now,
            ))
            stage_event(
                txn,
                EventType.WARRANTY_CLAIM_SUBMITTED,
                product_id,
                WarrantyClaimSubmittedPayload(product_id=product_id, claim_id=claim_id, customer=caller),
                created_by=caller,
                created_at=now,
            )
            return claim_id

        claim_id = self._runner.run([product_key(product_id)], operation)
        logger.info("Warranty claim submitted", product_id=product_id, claim_id=claim_id)
        return claim_id

    def process_warranty_claim(
        self,
        caller: str,
        product_id: str,
        claim_id: int,
        new_status: Union[ClaimStatus, str],
        service_notes: str = "",
    ) -> WarrantyClaim:
        """
        Approve or reject a pending claim.

        Approval uses one of the warranty's claims. The approval that uses
        the last one moves the warranty to CLAIM_LIMIT_REACHED.
        """
        def operation(txn: StoreTransaction) -> WarrantyClaim:
            self._registry.require_service_center(txn, caller)
            outcome = parse_outcome(new_status)
            product = load_product(txn, product_id)
            claim = load_claim(txn, product_id, claim_id)
            if not claim.is_pending:
                raise InvalidStateError(
                    f"Claim {claim_id} of {product_id} is already {claim.status.value}"
                )

            now = self._clock()
            claim = claim.model_copy(update={
                "status": outcome,
                "service_center": caller,
                "service_notes": service_notes,
                "processed_at": now,
            })
            txn.update_claim(product_id, claim)
            stage_event(
                txn,
                EventType.WARRANTY_CLAIM_PROCESSED,
                product_id,
                WarrantyClaimProcessedPayload(
                    product_id=product_id,
                    claim_id=claim_id,
                    status=outcome,
                    service_center=caller,
                ),
                created_by=caller,
                created_at=now,
            )

            if outcome == ClaimStatus.APPROVED:
                previous = product.warranty.status
                warranty = WarrantyEngine.apply_approval(product.warranty)
                txn.put_product(product.model_copy(update={"warranty": warranty}))
                if warranty.status == WarrantyStatus.CLAIM_LIMIT_REACHED and previous != warranty.status:
                    self._warranty.record_status_change(
                        txn, product_id, previous, warranty.status, caller, now,
                        reason="claim limit reached",
                    )
            return claim

        claim = self._runner.run([product_key(product_id)], operation)
        logger.info(
            "Warranty claim processed",
            product_id=product_id,
            claim_id=claim_id,
            status=claim.status.value,
        )
        return claim

    def log_service_action(
        self,
        caller: str,
        product_id: str,
        description: str,
        parts_replaced: str = "",
    ) -> int:
        """Record routine service as a COMPLETED entry in the claim list."""
        def operation(txn: StoreTransaction) -> int:
            self._registry.require_service_center(txn, caller)
            product = load_product(txn, product_id)

            now = self._clock()
            claim_id = len(txn.get_claims(product_id))
            txn.append_claim(product_id, WarrantyClaim(
                claim_id=claim_id,
                product_id=product_id,
                customer=product.current_owner,
                service_center=caller,
                description=description,
                service_notes=parts_replaced,
                submitted_at=now,
                processed_at=now,
                status=ClaimStatus.COMPLETED,
            ))
            stage_event(
                txn,
                EventType.SERVICE_ACTION_LOGGED,
                product_id,
                ServiceActionLoggedPayload(
                    product_id=product_id,
                    claim_id=claim_id,
                    service_center=caller,
                    customer=product.current_owner,
                ),
                created_by=caller,
                created_at=now,
            )
            return claim_id

        return self._runner.run([product_key(product_id)], operation)

    def set_claim_visibility(
        self, caller: str, product_id: str, claim_id: int, is_visible: bool
    ) -> WarrantyClaim:
        def operation(txn: StoreTransaction) -> WarrantyClaim:
            product = load_product(txn, product_id)
            require_owner(product, caller)
            claim = load_claim(txn, product_id, claim_id).model_copy(update={"is_visible": is_visible})
            txn.update_claim(product_id, claim)
            stage_event(
                txn,
                EventType.VISIBILITY_CHANGED,
                product_id,
                VisibilityChangedPayload(
                    product_id=product_id,
                    target="claim",
                    index=claim_id,
                    is_visible=is_visible,
                ),
                created_by=caller,
                created_at=self._clock(),
            )
            return claim

        return self._runner.run([product_key(product_id)], operation)
