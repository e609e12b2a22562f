"""
Warranty Engine

Warranty state machine:

    ACTIVE -> EXPIRED               (lazily derived, materialized on demand)
    ACTIVE -> CLAIM_LIMIT_REACHED   (on the approval that uses the last claim)
    ACTIVE -> REVOKED               (admin only)

Expiry is never written by a read. check_warranty_status derives it from
the clock; update_warranty_status persists it.
"""

from datetime import datetime
from typing import Optional

from ..db.store import StateStore, StoreTransaction, product_key
from ..observability import get_logger
from ..schemas import (
    EventType,
    Product,
    WarrantyInfo,
    WarrantyReport,
    WarrantyStatus,
    WarrantyStatusChangedPayload,
)
from .clock import Clock, utc_now
from .errors import InvalidStateError, NotFoundError
from .ledger import load_product
from .registry import RoleRegistry
from .transactions import TransactionRunner, stage_event

logger = get_logger(__name__)


class WarrantyEngine:
    """Warranty status derivation and the transitions that persist it."""

    def __init__(
        self,
        runner: TransactionRunner,
        registry: RoleRegistry,
        clock: Clock = utc_now,
    ):
        self._runner = runner
        self._store: StateStore = runner.store
        self._registry = registry
        self._clock = clock

    # ============================================================
    # Pure rules
    # ============================================================

    @staticmethod
    def effective_status(warranty: WarrantyInfo, now: datetime) -> WarrantyStatus:
        if warranty.status == WarrantyStatus.ACTIVE and now > warranty.expiry_date:
            return WarrantyStatus.EXPIRED
        return warranty.status

    @classmethod
    def report(cls, product: Product, now: datetime) -> WarrantyReport:
        w = product.warranty
        return WarrantyReport(
            product_id=product.product_id,
            status=cls.effective_status(w, now),
            stored_status=w.status,
            start_date=w.start_date,
            expiry_date=w.expiry_date,
            used_claims=w.used_claims,
            max_claims=w.max_claims,
            remaining_claims=w.remaining_claims,
        )

    @classmethod
    def ensure_claimable(cls, warranty: WarrantyInfo, now: datetime) -> None:
        """Raise InvalidStateError unless a new claim may be submitted now."""
        status = cls.effective_status(warranty, now)
        if status != WarrantyStatus.ACTIVE:
            raise InvalidStateError(f"Warranty is {status.value}")
        if now > warranty.expiry_date:
            raise InvalidStateError("Warranty has expired")
        if warranty.used_claims >= warranty.max_claims:
            raise InvalidStateError("Warranty claim limit reached")

    @staticmethod
    def apply_approval(warranty: WarrantyInfo) -> WarrantyInfo:
        """Use one claim. The last one moves the warranty to CLAIM_LIMIT_REACHED."""
        if warranty.used_claims >= warranty.max_claims:
            raise InvalidStateError("Approving this claim would exceed max_claims")
        used = warranty.used_claims + 1
        update = {"used_claims": used}
        if used == warranty.max_claims and warranty.status == WarrantyStatus.ACTIVE:
            update["status"] = WarrantyStatus.CLAIM_LIMIT_REACHED
        return warranty.model_copy(update=update)

    # ============================================================
    # Operations
    # ============================================================

    def check_warranty_status(self, product_id: str) -> WarrantyReport:
        product = self._store.get_product(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return self.report(product, self._clock())

    def update_warranty_status(self, caller: str, product_id: str) -> WarrantyReport:
        """Persist a lazily derived expiry. A no-op when nothing changed."""
        def operation(txn: StoreTransaction) -> WarrantyReport:
            product = load_product(txn, product_id)
            now = self._clock()
            if self.effective_status(product.warranty, now) != product.warranty.status:
                product = self._set_status(
                    txn, product, WarrantyStatus.EXPIRED, caller, now, reason="expired"
                )
            return self.report(product, now)

        return self._runner.run([product_key(product_id)], operation)

    def revoke_warranty(self, caller: str, product_id: str, reason: Optional[str] = None) -> WarrantyReport:
        self._registry.require_admin(caller)

        def operation(txn: StoreTransaction) -> WarrantyReport:
            product = load_product(txn, product_id)
            if product.warranty.status != WarrantyStatus.ACTIVE:
                raise InvalidStateError(
                    f"Cannot revoke a warranty that is {product.warranty.status.value}"
                )
            now = self._clock()
            product = self._set_status(txn, product, WarrantyStatus.REVOKED, caller, now, reason=reason)
            return self.report(product, now)

        report = self._runner.run([product_key(product_id)], operation)
        logger.warning("Warranty revoked", product_id=product_id, reason=reason)
        return report

    def _set_status(
        self,
        txn: StoreTransaction,
        product: Product,
        new_status: WarrantyStatus,
        caller: str,
        now: datetime,
        reason: Optional[str] = None,
    ) -> Product:
        previous = product.warranty.status
        product = product.model_copy(update={
            "warranty": product.warranty.model_copy(update={"status": new_status}),
        })
        txn.put_product(product)
        self.record_status_change(txn, product.product_id, previous, new_status, caller, now, reason)
        return product

    def record_status_change(
        self,
        txn: StoreTransaction,
        product_id: str,
        previous: WarrantyStatus,
        new_status: WarrantyStatus,
        caller: str,
        now: datetime,
        reason: Optional[str] = None,
    ) -> None:
        """Stage WARRANTY_STATUS_CHANGED for a status already written to the product."""
        stage_event(
            txn,
            EventType.WARRANTY_STATUS_CHANGED,
            product_id,
            WarrantyStatusChangedPayload(
                product_id=product_id,
                previous_status=previous,
                new_status=new_status,
                reason=reason,
            ),
            created_by=caller,
            created_at=now,
        )
