"""
Principal/Role Registry

Maps principals to supply chain roles and tracks service center
authorization. Only the configured admin principal may assign roles.

Role checks are table-driven: OPERATION_ROLES says which role may call an
operation, TRANSFER_TARGET_ROLES says which role the receiving principal
of a transfer must hold.
"""

from typing import Optional, Union

from ..config import LedgerSettings
from ..db.store import StateStore, StoreTransaction, principal_key
from ..observability import get_logger
from ..schemas import EventType, Principal, Role, RoleAssignedPayload
from .clock import Clock, utc_now
from .errors import InvalidArgumentError, UnauthorizedError
from .transactions import TransactionRunner, stage_event

logger = get_logger(__name__)


OPERATION_ROLES: dict[str, Role] = {
    "register_product": Role.MANUFACTURER,
    "transfer_to_retailer": Role.MANUFACTURER,
    "sell_to_customer": Role.RETAILER,
    "resell_product": Role.CUSTOMER,
    "submit_warranty_claim": Role.CUSTOMER,
}

TRANSFER_TARGET_ROLES: dict[str, Role] = {
    "transfer_to_retailer": Role.RETAILER,
    "sell_to_customer": Role.CUSTOMER,
    "resell_product": Role.CUSTOMER,
}


def parse_role(role: Union[Role, str]) -> Role:
    try:
        return Role(role)
    except ValueError:
        raise InvalidArgumentError(f"Unknown role: {role!r}")


class RoleRegistry:
    """Role assignment and the authorization checks built on it."""

    def __init__(
        self,
        runner: TransactionRunner,
        settings: LedgerSettings,
        clock: Clock = utc_now,
    ):
        self._runner = runner
        self._store: StateStore = runner.store
        self._settings = settings
        self._clock = clock

    @property
    def admin(self) -> str:
        return self._settings.admin_principal

    def is_admin(self, principal: str) -> bool:
        return principal == self._settings.admin_principal

    # ============================================================
    # Commands
    # ============================================================

    def assign_role(self, caller: str, principal: str, role: Union[Role, str]) -> Principal:
        """
        Assign a role to a principal (admin only).

        Assigning SERVICE_CENTER also grants service center authorization.
        Other roles leave the authorization flag as it was.
        """
        role = parse_role(role)
        return self._assign(caller, principal, role, grant_service_center=role == Role.SERVICE_CENTER)

    def add_service_center(self, caller: str, principal: str) -> Principal:
        """Give a principal the SERVICE_CENTER role and authorization in one step."""
        return self._assign(caller, principal, Role.SERVICE_CENTER, grant_service_center=True)

    def _assign(self, caller: str, principal: str, role: Role, grant_service_center: bool) -> Principal:
        self.require_admin(caller)
        if not principal:
            raise InvalidArgumentError("principal cannot be empty")

        def operation(txn: StoreTransaction) -> Principal:
            now = self._clock()
            existing = txn.get_principal(principal) or Principal(principal_id=principal)
            updated = existing.model_copy(update={
                "role": role,
                "is_service_center": existing.is_service_center or grant_service_center,
                "assigned_at": now,
                "assigned_by": caller,
            })
            txn.put_principal(updated)
            stage_event(
                txn,
                EventType.ROLE_ASSIGNED,
                principal,
                RoleAssignedPayload(
                    principal_id=principal,
                    role=role,
                    is_service_center=updated.is_service_center,
                ),
                created_by=caller,
                created_at=now,
                entity_type="principal",
            )
            return updated

        result = self._runner.run([principal_key(principal)], operation)
        logger.info("Role assigned", principal=principal, role=role.value)
        return result

    # ============================================================
    # Queries
    # ============================================================

    def get_principal(self, principal: str) -> Optional[Principal]:
        return self._store.get_principal(principal)

    def get_role(self, principal: str) -> Role:
        """The principal's role, NONE if it has never been assigned one."""
        found = self._store.get_principal(principal)
        return found.role if found is not None else Role.NONE

    def is_service_center(self, principal: str) -> bool:
        found = self._store.get_principal(principal)
        return found is not None and found.is_service_center

    # ============================================================
    # Authorization checks (inside a transaction)
    # ============================================================

    @staticmethod
    def role_in(txn: StoreTransaction, principal: str) -> Role:
        found = txn.get_principal(principal)
        return found.role if found is not None else Role.NONE

    def require_admin(self, caller: str) -> None:
        if not self.is_admin(caller):
            raise UnauthorizedError(f"{caller} is not the ledger administrator")

    def require_role(self, txn: StoreTransaction, caller: str, operation: str) -> Role:
        required = OPERATION_ROLES[operation]
        actual = self.role_in(txn, caller)
        if actual != required:
            raise UnauthorizedError(
                f"{operation} requires role {required.value}; {caller} has {actual.value}"
            )
        return actual

    def require_target_role(self, txn: StoreTransaction, target: str, operation: str) -> Role:
        required = TRANSFER_TARGET_ROLES[operation]
        actual = self.role_in(txn, target)
        if actual != required:
            raise UnauthorizedError(
                f"{operation} target must have role {required.value}; {target} has {actual.value}"
            )
        return actual

    def require_service_center(self, txn: StoreTransaction, caller: str) -> None:
        found = txn.get_principal(caller)
        if found is None or not found.is_service_center:
            raise UnauthorizedError(f"{caller} is not an authorized service center")
