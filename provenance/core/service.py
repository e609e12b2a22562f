"""
Provenance Service

The single entry point to the ledger. Wires the registry, product ledger,
warranty engine, claim workflow and query layer around one state store
and one transaction runner, and exposes every operation as a flat method.

Usage:
    service = ProvenanceService()                       # in-memory store
    service.assign_role("admin", "acme", Role.MANUFACTURER)
    service.register_product("acme", "P-1", "SN-1", "X1", "", 365, 2)

Mutations take the calling principal as their first argument and raise a
LedgerError subclass on failure, in which case nothing was written.
"""

from typing import Optional, Union

from ..config import LedgerSettings
from ..db.store import InMemoryStateStore, StateStore
from ..schemas import (
    ClaimStatus,
    LedgerEvent,
    OwnershipRecord,
    Principal,
    Product,
    ProductDetails,
    Role,
    WarrantyClaim,
    WarrantyReport,
)
from .claims import ClaimWorkflow
from .clock import Clock, utc_now
from .hasher import Hasher, event_envelope
from .ledger import ProductLedger
from .queries import ProductQueries
from .registry import RoleRegistry
from .transactions import EventHandler, TransactionRunner
from .visibility import VisibilityFilter
from .warranty import WarrantyEngine


def verify_event_chain(events: list[LedgerEvent]) -> bool:
    """
    Verify an ordered list of audit events forms an intact chain.

    Checks sequence numbers, genesis rules, chain linkage and every hash.
    """
    prev_hash = None

    for expected_sequence, event in enumerate(events):
        if event.sequence_number != expected_sequence:
            return False
        if event.previous_event_hash != prev_hash:
            return False

        envelope = event_envelope(
            event.event_type, event.entity_id, event.entity_type,
            event.payload, event.created_by, event.created_at,
        )
        if not Hasher.verify(envelope, event.event_hash, prev_hash):
            return False

        prev_hash = event.event_hash

    return True


class ProvenanceService:
    """Facade over the ledger components."""

    def __init__(
        self,
        store: Optional[StateStore] = None,
        settings: Optional[LedgerSettings] = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings or LedgerSettings()
        self.store = store if store is not None else InMemoryStateStore(
            lock_timeout=self.settings.lock_timeout_seconds
        )
        self.runner = TransactionRunner(self.store, self.settings)
        self.registry = RoleRegistry(self.runner, self.settings, clock)
        self.ledger = ProductLedger(self.runner, self.registry, clock)
        self.warranty = WarrantyEngine(self.runner, self.registry, clock)
        self.claims = ClaimWorkflow(self.runner, self.registry, self.warranty, clock)
        self.queries = ProductQueries(
            self.store, self.registry, VisibilityFilter(self.settings), clock
        )

    def subscribe(self, handler: EventHandler) -> None:
        """Deliver every committed audit event to handler, after commit."""
        self.runner.subscribe(handler)

    # Role registry

    def assign_role(self, caller: str, principal: str, role: Union[Role, str]) -> Principal:
        return self.registry.assign_role(caller, principal, role)

    def add_service_center(self, caller: str, principal: str) -> Principal:
        return self.registry.add_service_center(caller, principal)

    def get_role(self, principal: str) -> Role:
        return self.registry.get_role(principal)

    def is_service_center(self, principal: str) -> bool:
        return self.registry.is_service_center(principal)

    def get_principal(self, principal: str) -> Principal:
        return self.registry.get_principal(principal) or Principal(principal_id=principal)

    # Product ledger

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
        return self.ledger.register_product(
            caller, product_id, serial_number, model, specifications,
            warranty_duration_days, max_claims,
        )

    def transfer_to_retailer(self, caller: str, product_id: str, retailer: str, details: str = "") -> Product:
        return self.ledger.transfer_to_retailer(caller, product_id, retailer, details)

    def sell_to_customer(self, caller: str, product_id: str, customer: str, details: str = "") -> Product:
        return self.ledger.sell_to_customer(caller, product_id, customer, details)

    def resell_product(self, caller: str, product_id: str, new_owner: str, details: str = "") -> Product:
        return self.ledger.resell_product(caller, product_id, new_owner, details)

    def set_product_visibility(self, caller: str, product_id: str, is_visible: bool) -> Product:
        return self.ledger.set_product_visibility(caller, product_id, is_visible)

    def set_ownership_record_visibility(
        self, caller: str, product_id: str, sequence: int, is_visible: bool
    ) -> OwnershipRecord:
        return self.ledger.set_ownership_record_visibility(caller, product_id, sequence, is_visible)

    # Warranty engine

    def check_warranty_status(self, product_id: str) -> WarrantyReport:
        return self.warranty.check_warranty_status(product_id)

    def update_warranty_status(self, caller: str, product_id: str) -> WarrantyReport:
        return self.warranty.update_warranty_status(caller, product_id)

    def revoke_warranty(self, caller: str, product_id: str, reason: Optional[str] = None) -> WarrantyReport:
        return self.warranty.revoke_warranty(caller, product_id, reason)

    # Claim workflow

    def submit_warranty_claim(self, caller: str, product_id: str, description: str) -> int:
        return self.claims.submit_warranty_claim(caller, product_id, description)

    def process_warranty_claim(
        self,
        caller: str,
        product_id: str,
        claim_id: int,
        new_status: Union[ClaimStatus, str],
        service_notes: str = "",
    ) -> WarrantyClaim:
        return self.claims.process_warranty_claim(caller, product_id, claim_id, new_status, service_notes)

    def log_service_action(self, caller: str, product_id: str, description: str, parts_replaced: str = "") -> int:
        return self.claims.log_service_action(caller, product_id, description, parts_replaced)

    def set_claim_visibility(self, caller: str, product_id: str, claim_id: int, is_visible: bool) -> WarrantyClaim:
        return self.claims.set_claim_visibility(caller, product_id, claim_id, is_visible)

    # Queries

    def get_product_details(self, caller: str, product_id: str) -> ProductDetails:
        return self.queries.get_product_details(caller, product_id)

    def get_ownership_history(self, caller: str, product_id: str) -> list[OwnershipRecord]:
        return self.queries.get_ownership_history(caller, product_id)

    def get_warranty_history(self, caller: str, product_id: str) -> list[WarrantyClaim]:
        return self.queries.get_warranty_history(caller, product_id)

    def get_user_products(self, principal: str) -> list[str]:
        return self.queries.get_user_products(principal)

    def verify_product_ownership(self, caller: str, product_id: str) -> bool:
        return self.queries.verify_product_ownership(caller, product_id)

    def get_audit_log(self, caller: str, entity_id: Optional[str] = None) -> list[LedgerEvent]:
        return self.queries.get_audit_log(caller, entity_id)

    # Audit chain

    @property
    def event_count(self) -> int:
        return self.store.get_event_count()

    def get_events(self) -> list[LedgerEvent]:
        return self.store.list_events()

    def verify_chain_integrity(self) -> bool:
        """
        Verify the entire audit chain is intact.

        This should be run periodically as a health check.
        """
        return verify_event_chain(self.store.list_events())
