"""
Query Layer

Read-only views over the state store. Every product read comes from a
single consistent snapshot and goes through the VisibilityFilter.
Queries never fail on visibility grounds; they filter or mask.
"""

from typing import Optional

from ..db.store import ProductSnapshot, StateStore
from ..schemas import LedgerEvent, OwnershipRecord, ProductDetails, WarrantyClaim
from .clock import Clock, utc_now
from .errors import NotFoundError
from .registry import RoleRegistry
from .visibility import VisibilityFilter
from .warranty import WarrantyEngine


class ProductQueries:
    def __init__(
        self,
        store: StateStore,
        registry: RoleRegistry,
        visibility: VisibilityFilter,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._registry = registry
        self._visibility = visibility
        self._clock = clock

    def _snapshot(self, product_id: str) -> ProductSnapshot:
        snapshot = self._store.read_product_snapshot(product_id)
        if snapshot is None:
            raise NotFoundError(f"Product {product_id} not found")
        return snapshot

    def get_product_details(self, caller: str, product_id: str) -> ProductDetails:
        product = self._snapshot(product_id).product
        report = WarrantyEngine.report(product, self._clock())
        return self._visibility.product_details(caller, product, report)

    def get_ownership_history(self, caller: str, product_id: str) -> list[OwnershipRecord]:
        snapshot = self._snapshot(product_id)
        return self._visibility.filter_records(caller, snapshot.product, snapshot.ownership)

    def get_warranty_history(self, caller: str, product_id: str) -> list[WarrantyClaim]:
        snapshot = self._snapshot(product_id)
        return self._visibility.filter_records(caller, snapshot.product, snapshot.claims)

    def get_user_products(self, principal: str) -> list[str]:
        """Product keys the principal currently owns, sorted."""
        return self._store.get_user_products(principal)

    def verify_product_ownership(self, caller: str, product_id: str) -> bool:
        """True when the caller is the product's current owner."""
        product = self._store.get_product(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product.current_owner == caller

    def get_audit_log(self, caller: str, entity_id: Optional[str] = None) -> list[LedgerEvent]:
        """The audit event log, optionally for one product or principal (admin only)."""
        self._registry.require_admin(caller)
        if entity_id:
            return self._store.list_events_for_entity(entity_id)
        return self._store.list_events()
