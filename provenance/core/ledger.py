"""
Product Ledger

The canonical product table and the chain of custody.

Every ownership change goes through one transfer routine, which in a
single transaction:
- updates current_owner
- appends an OwnershipRecord
- moves the product key between owners in the user product index
- stages an OWNERSHIP_TRANSFERRED audit event

Products are never deleted.
"""

from datetime import datetime

from ..db.store import StoreTransaction, product_key
from ..observability import get_logger
from ..schemas import (
    INITIAL_MANUFACTURING,
    EventType,
    OwnershipRecord,
    OwnershipTransferredPayload,
    Product,
    ProductRegisteredPayload,
    Role,
    VisibilityChangedPayload,
    WarrantyInfo,
    WarrantyStatus,
)
from .clock import Clock, utc_now
from .errors import AlreadyExistsError, InvalidArgumentError, NotFoundError, UnauthorizedError
from .registry import RoleRegistry
from .transactions import TransactionRunner, stage_event

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400

# Upper bound on warranty terms; keeps expiry_date representable as a datetime
MAX_WARRANTY_DURATION_DAYS = 100 * 365


def load_product(txn: StoreTransaction, product_id: str) -> Product:
    product = txn.get_product(product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def require_owner(product: Product, caller: str) -> None:
    if product.current_owner != caller:
        raise UnauthorizedError(f"{caller} is not the current owner of {product.product_id}")


class ProductLedger:
    """Registration, transfers and owner visibility preferences."""

    def __init__(self, runner: TransactionRunner, registry: RoleRegistry, clock: Clock = utc_now):
        self._runner = runner
        self._registry = registry
        self._clock = clock

    def register_product(
        self,
        caller: str,
        product_id: str,
        serial_number: str,
        model: str,
        specifications: str,
        warranty_duration_days: int,
        max_claims: int,
    ) -> Product:
        """
        Register a new product owned by the calling manufacturer.

        The warranty starts now and is reset on the first retail sale.
        A warranty with no claims to give starts at CLAIM_LIMIT_REACHED.
        """
        def operation(txn: StoreTransaction) -> Product:
            self._registry.require_role(txn, caller, "register_product")
            if not product_id:
                raise InvalidArgumentError("product_id cannot be empty")
            if warranty_duration_days <= 0:
                raise InvalidArgumentError("warranty_duration_days must be positive")
            if warranty_duration_days > MAX_WARRANTY_DURATION_DAYS:
                raise InvalidArgumentError(
                    f"warranty_duration_days cannot exceed {MAX_WARRANTY_DURATION_DAYS}"
                )
            if max_claims < 0:
                raise InvalidArgumentError("max_claims cannot be negative")
            if txn.get_product(product_id) is not None:
                raise AlreadyExistsError(f"Product {product_id} is already registered")

            now = self._clock()
            product = Product(
                product_id=product_id,
                serial_number=serial_number,
                model=model,
                specifications=specifications,
                manufacturer=caller,
                current_owner=caller,
                manufactured_at=now,
                warranty=WarrantyInfo(
                    start_date=now,
                    duration_seconds=int(warranty_duration_days * SECONDS_PER_DAY),
                    max_claims=max_claims,
                    status=WarrantyStatus.ACTIVE if max_claims > 0 else WarrantyStatus.CLAIM_LIMIT_REACHED,
                ),
            )
            txn.put_product(product)
            txn.append_ownership(product_id, OwnershipRecord(
                sequence=0,
                owner=caller,
                role=Role.MANUFACTURER,
                transferred_at=now,
                details=INITIAL_MANUFACTURING,
            ))
            txn.move_product(product_id, None, caller)
            stage_event(
                txn,
                EventType.PRODUCT_REGISTERED,
                product_id,
                ProductRegisteredPayload(
                    product_id=product_id,
                    manufacturer=caller,
                    serial_number=serial_number,
                    model=model,
                    warranty_duration_seconds=product.warranty.duration_seconds,
                    max_claims=max_claims,
                ),
                created_by=caller,
                created_at=now,
            )
            return product

        product = self._runner.run([product_key(product_id)], operation)
        logger.info("Product registered", product_id=product_id, manufacturer=caller)
        return product

    # ============================================================
    # Transfers
    # ============================================================

    def transfer_to_retailer(self, caller: str, product_id: str, retailer: str, details: str = "") -> Product:
        return self._run_transfer(caller, product_id, retailer, details, "transfer_to_retailer")

    def sell_to_customer(self, caller: str, product_id: str, customer: str, details: str = "") -> Product:
        """Retail sale. An active warranty restarts at the sale timestamp."""
        def after(txn: StoreTransaction, product: Product, now: datetime) -> Product:
            if product.warranty.status != WarrantyStatus.ACTIVE:
                return product
            product = product.model_copy(update={
                "warranty": product.warranty.model_copy(update={"start_date": now}),
            })
            txn.put_product(product)
            return product

        return self._run_transfer(caller, product_id, customer, details, "sell_to_customer", after)

    def resell_product(self, caller: str, product_id: str, new_owner: str, details: str = "") -> Product:
        return self._run_transfer(caller, product_id, new_owner, details, "resell_product")

    def _run_transfer(self, caller, product_id, target, details, operation_name, after=None) -> Product:
        def operation(txn: StoreTransaction) -> Product:
            now = self._clock()
            product = self._transfer(txn, caller, product_id, target, details, operation_name, now)
            if after is not None:
                product = after(txn, product, now)
            return product

        product = self._runner.run([product_key(product_id)], operation)
        logger.info(
            "Ownership transferred",
            product_id=product_id,
            from_owner=caller,
            to_owner=target,
            operation=operation_name,
        )
        return product

    def _transfer(
        self,
        txn: StoreTransaction,
        caller: str,
        product_id: str,
        target: str,
        details: str,
        operation_name: str,
        now: datetime,
    ) -> Product:
        from_role = self._registry.require_role(txn, caller, operation_name)
        if not target:
            raise InvalidArgumentError("Transfer target cannot be empty")

        product = load_product(txn, product_id)
        require_owner(product, caller)
        if target == product.current_owner:
            raise InvalidArgumentError(f"{target} already owns {product_id}")
        to_role = self._registry.require_target_role(txn, target, operation_name)

        from_owner = product.current_owner
        product = product.model_copy(update={"current_owner": target})
        txn.put_product(product)
        txn.append_ownership(product_id, OwnershipRecord(
            sequence=len(txn.get_ownership(product_id)),
            owner=target,
            role=to_role,
            transferred_at=now,
            details=details,
        ))
        txn.move_product(product_id, from_owner, target)
        stage_event(
            txn,
            EventType.OWNERSHIP_TRANSFERRED,
            product_id,
            OwnershipTransferredPayload(
                product_id=product_id,
                from_owner=from_owner,
                to_owner=target,
                from_role=from_role,
                to_role=to_role,
                details=details,
            ),
            created_by=caller,
            created_at=now,
        )
        return product

    # ============================================================
    # Visibility preferences
    # ============================================================

    def set_product_visibility(self, caller: str, product_id: str, is_visible: bool) -> Product:
        """Owner-level opt-out of third-party detail and history reads."""
        def operation(txn: StoreTransaction) -> Product:
            product = load_product(txn, product_id)
            require_owner(product, caller)
            product = product.model_copy(update={"is_visible": is_visible})
            txn.put_product(product)
            stage_event(
                txn,
                EventType.VISIBILITY_CHANGED,
                product_id,
                VisibilityChangedPayload(product_id=product_id, target="product", is_visible=is_visible),
                created_by=caller,
                created_at=self._clock(),
            )
            return product

        return self._runner.run([product_key(product_id)], operation)

    def set_ownership_record_visibility(
        self, caller: str, product_id: str, sequence: int, is_visible: bool
    ) -> OwnershipRecord:
        def operation(txn: StoreTransaction) -> OwnershipRecord:
            product = load_product(txn, product_id)
            require_owner(product, caller)
            history = txn.get_ownership(product_id)
            if not 0 <= sequence < len(history):
                raise NotFoundError(f"Ownership record {sequence} of {product_id} not found")
            txn.set_ownership_visibility(product_id, sequence, is_visible)
            stage_event(
                txn,
                EventType.VISIBILITY_CHANGED,
                product_id,
                VisibilityChangedPayload(
                    product_id=product_id,
                    target="ownership_record",
                    index=sequence,
                    is_visible=is_visible,
                ),
                created_by=caller,
                created_at=self._clock(),
            )
            return history[sequence].model_copy(update={"is_visible": is_visible})

        return self._runner.run([product_key(product_id)], operation)
