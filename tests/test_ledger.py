"""
Tests for the Product Provenance Ledger

Demonstrates the complete product lifecycle:
1. Assign roles
2. Register a product
3. Move it manufacturer -> retailer -> customer -> customer
4. Submit, process and log warranty claims
5. Query it through the visibility filter
6. Verify audit chain integrity
"""

from datetime import timedelta

import pytest

from provenance.config import HiddenRecordPolicy, LedgerSettings
from provenance.core.errors import (
    AlreadyExistsError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from provenance.core.ledger import MAX_WARRANTY_DURATION_DAYS
from provenance.core.registry import OPERATION_ROLES, TRANSFER_TARGET_ROLES
from provenance.core.service import ProvenanceService
from provenance.core.visibility import REDACTED
from provenance.core.warranty import WarrantyEngine
from provenance.schemas import (
    INITIAL_MANUFACTURING,
    ClaimStatus,
    EventType,
    Role,
    WarrantyStatus,
)

from conftest import (
    ADMIN,
    CUSTOMER,
    MANUFACTURER,
    OTHER_CUSTOMER,
    OTHER_MANUFACTURER,
    RETAILER,
    SERVICE_CENTER,
    STRANGER,
    T0,
)


def event_types(service):
    return [e.event_type for e in service.get_events()]


class TestRoleRegistry:
    """Role assignment is admin only and table driven."""

    def test_unknown_principal_has_no_role(self, service):
        assert service.get_role(STRANGER) == Role.NONE
        assert not service.is_service_center(STRANGER)

    def test_admin_assigns_role(self, service, clock):
        principal = service.assign_role(ADMIN, "newco", Role.RETAILER)

        assert principal.role == Role.RETAILER
        assert principal.assigned_by == ADMIN
        assert principal.assigned_at == clock.now
        assert service.get_role("newco") == Role.RETAILER

        last = service.get_events()[-1]
        assert last.event_type == EventType.ROLE_ASSIGNED
        assert last.entity_id == "newco"
        assert last.payload["role"] == "retailer"

    def test_non_admin_cannot_assign(self, service):
        before = service.event_count
        with pytest.raises(UnauthorizedError):
            service.assign_role(MANUFACTURER, STRANGER, Role.MANUFACTURER)
        assert service.get_role(STRANGER) == Role.NONE
        assert service.event_count == before

    def test_empty_principal_rejected(self, service):
        with pytest.raises(InvalidArgumentError):
            service.assign_role(ADMIN, "", Role.CUSTOMER)

    def test_unknown_role_rejected(self, service):
        with pytest.raises(InvalidArgumentError):
            service.assign_role(ADMIN, STRANGER, "wizard")

    def test_service_center_role_grants_authorization(self, service):
        service.assign_role(ADMIN, "repairs", Role.SERVICE_CENTER)
        assert service.is_service_center("repairs")

    def test_other_roles_leave_authorization_unchanged(self, service):
        service.assign_role(ADMIN, SERVICE_CENTER, Role.CUSTOMER)
        assert service.get_role(SERVICE_CENTER) == Role.CUSTOMER
        assert service.is_service_center(SERVICE_CENTER)

    def test_add_service_center(self, service):
        principal = service.add_service_center(ADMIN, "repairs")
        assert principal.role == Role.SERVICE_CENTER
        assert principal.is_service_center

    def test_permission_tables(self):
        assert OPERATION_ROLES["register_product"] == Role.MANUFACTURER
        assert OPERATION_ROLES["sell_to_customer"] == Role.RETAILER
        assert TRANSFER_TARGET_ROLES["transfer_to_retailer"] == Role.RETAILER
        assert TRANSFER_TARGET_ROLES["resell_product"] == Role.CUSTOMER


class TestProductRegistration:
    def test_register_product(self, service, product, clock):
        assert product.current_owner == MANUFACTURER
        assert product.manufacturer == MANUFACTURER
        assert product.manufactured_at == clock.now
        assert product.warranty.status == WarrantyStatus.ACTIVE
        assert product.warranty.start_date == clock.now
        assert product.warranty.duration_seconds == 365 * 86400
        assert product.warranty.used_claims == 0

        history = service.get_ownership_history(ADMIN, "P-1")
        assert len(history) == 1
        assert history[0].owner == MANUFACTURER
        assert history[0].role == Role.MANUFACTURER
        assert history[0].details == INITIAL_MANUFACTURING

        assert service.get_user_products(MANUFACTURER) == ["P-1"]
        assert event_types(service)[-1] == EventType.PRODUCT_REGISTERED

    def test_requires_manufacturer(self, service):
        with pytest.raises(UnauthorizedError):
            service.register_product(RETAILER, "P-2", "SN", "M", "", 365, 1)

    def test_role_checked_before_arguments(self, service):
        with pytest.raises(UnauthorizedError):
            service.register_product(RETAILER, "", "SN", "M", "", 0, -1)

    @pytest.mark.parametrize("product_id,days,max_claims", [
        ("", 365, 1),
        ("P-2", 0, 1),
        ("P-2", -5, 1),
        ("P-2", 365, -1),
    ])
    def test_invalid_arguments(self, service, product_id, days, max_claims):
        with pytest.raises(InvalidArgumentError):
            service.register_product(MANUFACTURER, product_id, "SN", "M", "", days, max_claims)
        assert service.get_user_products(MANUFACTURER) == []

    def test_zero_claim_warranty_starts_at_limit(self, service):
        product = service.register_product(MANUFACTURER, "P-2", "SN", "M", "", 30, 0)
        assert product.warranty.max_claims == 0
        assert product.warranty.status == WarrantyStatus.CLAIM_LIMIT_REACHED

        report = service.check_warranty_status("P-2")
        assert report.status == WarrantyStatus.CLAIM_LIMIT_REACHED
        assert report.remaining_claims == 0

    def test_overlong_warranty_rejected(self, service):
        before = service.event_count
        with pytest.raises(InvalidArgumentError):
            service.register_product(MANUFACTURER, "P-big", "SN", "M", "", 3_000_000, 2)

        with pytest.raises(NotFoundError):
            service.check_warranty_status("P-big")
        assert service.get_user_products(MANUFACTURER) == []
        assert service.event_count == before

    def test_longest_warranty_stays_readable(self, service, clock):
        service.register_product(MANUFACTURER, "P-long", "SN", "M", "", MAX_WARRANTY_DURATION_DAYS, 1)
        report = service.check_warranty_status("P-long")
        assert report.expiry_date == clock.now + timedelta(days=MAX_WARRANTY_DURATION_DAYS)
        assert service.get_product_details(ADMIN, "P-long").warranty.status == WarrantyStatus.ACTIVE

    def test_duplicate_rejected_and_original_untouched(self, service, product):
        before = service.event_count
        with pytest.raises(AlreadyExistsError):
            service.register_product(OTHER_MANUFACTURER, "P-1", "SN-EVIL", "Fake", "", 1, 9)

        details = service.get_product_details(ADMIN, "P-1")
        assert details.serial_number == "SN-0001"
        assert details.current_owner == MANUFACTURER
        assert len(service.get_ownership_history(ADMIN, "P-1")) == 1
        assert service.get_user_products(OTHER_MANUFACTURER) == []
        assert service.event_count == before


class TestTransfers:
    def test_transfer_to_retailer(self, service, product):
        service.transfer_to_retailer(MANUFACTURER, "P-1", RETAILER, "pallet 7")

        assert service.get_product_details(ADMIN, "P-1").current_owner == RETAILER
        assert service.get_user_products(MANUFACTURER) == []
        assert service.get_user_products(RETAILER) == ["P-1"]

        history = service.get_ownership_history(ADMIN, "P-1")
        assert [r.owner for r in history] == [MANUFACTURER, RETAILER]
        assert history[1].role == Role.RETAILER
        assert history[1].details == "pallet 7"
        assert history[1].sequence == 1

        event = service.get_events()[-1]
        assert event.event_type == EventType.OWNERSHIP_TRANSFERRED
        assert event.payload["from_owner"] == MANUFACTURER
        assert event.payload["to_owner"] == RETAILER
        assert event.payload["from_role"] == "manufacturer"
        assert event.payload["to_role"] == "retailer"

    def test_only_current_owner_may_transfer(self, service, product):
        with pytest.raises(UnauthorizedError):
            service.transfer_to_retailer(OTHER_MANUFACTURER, "P-1", RETAILER)

    def test_target_must_hold_required_role(self, service, product):
        before = service.event_count
        with pytest.raises(UnauthorizedError):
            service.transfer_to_retailer(MANUFACTURER, "P-1", CUSTOMER)
        assert service.get_product_details(ADMIN, "P-1").current_owner == MANUFACTURER
        assert len(service.get_ownership_history(ADMIN, "P-1")) == 1
        assert service.event_count == before

    def test_unknown_product(self, service):
        with pytest.raises(NotFoundError):
            service.transfer_to_retailer(MANUFACTURER, "nope", RETAILER)

    def test_empty_target(self, service, product):
        with pytest.raises(InvalidArgumentError):
            service.transfer_to_retailer(MANUFACTURER, "P-1", "")

    def test_transfer_to_current_owner_rejected(self, service, owned_product):
        with pytest.raises(InvalidArgumentError):
            service.resell_product(CUSTOMER, "P-1", CUSTOMER)

    def test_wrong_step_for_role(self, service, product):
        service.transfer_to_retailer(MANUFACTURER, "P-1", RETAILER)
        with pytest.raises(UnauthorizedError):
            service.resell_product(RETAILER, "P-1", CUSTOMER)

    def test_sale_restarts_warranty(self, service, product, clock):
        service.transfer_to_retailer(MANUFACTURER, "P-1", RETAILER)
        sale_time = clock.advance(days=30)
        service.sell_to_customer(RETAILER, "P-1", CUSTOMER)

        report = service.check_warranty_status("P-1")
        assert report.start_date == sale_time
        assert report.expiry_date == sale_time + timedelta(days=365)

    def test_sale_does_not_restart_revoked_warranty(self, service, product, clock):
        service.transfer_to_retailer(MANUFACTURER, "P-1", RETAILER)
        service.revoke_warranty(ADMIN, "P-1", "recalled")
        clock.advance(days=30)
        service.sell_to_customer(RETAILER, "P-1", CUSTOMER)

        report = service.check_warranty_status("P-1")
        assert report.start_date == T0
        assert report.status == WarrantyStatus.REVOKED

    def test_resale_keeps_warranty_clock(self, service, owned_product, clock):
        start = service.check_warranty_status("P-1").start_date
        clock.advance(days=100)
        service.resell_product(CUSTOMER, "P-1", OTHER_CUSTOMER, "marketplace")
        assert service.check_warranty_status("P-1").start_date == start

    def test_version_increments_on_each_write(self, service, product):
        assert product.version == 0
        assert service.transfer_to_retailer(MANUFACTURER, "P-1", RETAILER).version == 1
        assert service.sell_to_customer(RETAILER, "P-1", CUSTOMER).version == 2


class TestWarrantyEngine:
    def test_check_status(self, service, product, clock):
        report = service.check_warranty_status("P-1")
        assert report.status == WarrantyStatus.ACTIVE
        assert report.stored_status == WarrantyStatus.ACTIVE
        assert report.expiry_date == clock.now + timedelta(days=365)
        assert report.remaining_claims == 2

    def test_unknown_product(self, service):
        with pytest.raises(NotFoundError):
            service.check_warranty_status("nope")

    def test_expiry_is_lazy(self, service, product, clock):
        before = service.event_count
        clock.advance(days=366)

        report = service.check_warranty_status("P-1")
        assert report.status == WarrantyStatus.EXPIRED
        assert report.stored_status == WarrantyStatus.ACTIVE
        assert service.event_count == before

    def test_expiry_boundary(self, product):
        warranty = product.warranty
        assert WarrantyEngine.effective_status(warranty, warranty.expiry_date) == WarrantyStatus.ACTIVE
        assert WarrantyEngine.effective_status(
            warranty, warranty.expiry_date + timedelta(microseconds=1)
        ) == WarrantyStatus.EXPIRED

    def test_update_materializes_expiry_once(self, service, product, clock):
        clock.advance(days=366)

        report = service.update_warranty_status(STRANGER, "P-1")
        assert report.stored_status == WarrantyStatus.EXPIRED
        event = service.get_events()[-1]
        assert event.event_type == EventType.WARRANTY_STATUS_CHANGED
        assert event.payload["new_status"] == "expired"
        assert event.created_by == STRANGER

        count = service.event_count
        service.update_warranty_status(STRANGER, "P-1")
        assert service.event_count == count

    def test_update_is_noop_while_active(self, service, product):
        count = service.event_count
        report = service.update_warranty_status(STRANGER, "P-1")
        assert report.stored_status == WarrantyStatus.ACTIVE
        assert service.event_count == count

    def test_revoke(self, service, product):
        report = service.revoke_warranty(ADMIN, "P-1", "recalled")
        assert report.status == WarrantyStatus.REVOKED
        assert service.get_events()[-1].payload["reason"] == "recalled"

    def test_revoke_is_admin_only(self, service, product):
        with pytest.raises(UnauthorizedError):
            service.revoke_warranty(MANUFACTURER, "P-1")

    def test_revoke_requires_active(self, service, product):
        service.revoke_warranty(ADMIN, "P-1")
        with pytest.raises(InvalidStateError):
            service.revoke_warranty(ADMIN, "P-1")


class TestClaimWorkflow:
    def test_submit_claim(self, service, owned_product, clock):
        claim_id = service.submit_warranty_claim(CUSTOMER, "P-1", "Screen flickers")
        assert claim_id == 0

        claims = service.get_warranty_history(CUSTOMER, "P-1")
        assert len(claims) == 1
        assert claims[0].status == ClaimStatus.PENDING
        assert claims[0].customer == CUSTOMER
        assert claims[0].service_center == ""
        assert claims[0].submitted_at == clock.now

        event = service.get_events()[-1]
        assert event.event_type == EventType.WARRANTY_CLAIM_SUBMITTED
        assert event.payload["claim_id"] == 0

    def test_submit_requires_customer_owner(self, service, owned_product):
        with pytest.raises(UnauthorizedError):
            service.submit_warranty_claim(OTHER_CUSTOMER, "P-1", "Not mine")
        with pytest.raises(UnauthorizedError):
            service.submit_warranty_claim(RETAILER, "P-1", "Not a customer")

    def test_submit_after_expiry_with_stale_stored_status(self, service, owned_product, clock):
        clock.advance(days=366)
        assert service.check_warranty_status("P-1").stored_status == WarrantyStatus.ACTIVE
        with pytest.raises(InvalidStateError):
            service.submit_warranty_claim(CUSTOMER, "P-1", "Too late")
        assert service.get_warranty_history(CUSTOMER, "P-1") == []

    def test_submit_with_zero_claim_warranty(self, service, clock):
        service.register_product(MANUFACTURER, "P-0", "SN", "M", "", 365, 0)
        service.transfer_to_retailer(MANUFACTURER, "P-0", RETAILER)
        service.sell_to_customer(RETAILER, "P-0", CUSTOMER)
        with pytest.raises(InvalidStateError):
            service.submit_warranty_claim(CUSTOMER, "P-0", "Broken")

    def test_approve_claim(self, service, owned_product):
        service.submit_warranty_claim(CUSTOMER, "P-1", "Broken")
        claim = service.process_warranty_claim(SERVICE_CENTER, "P-1", 0, ClaimStatus.APPROVED, "Replaced")

        assert claim.status == ClaimStatus.APPROVED
        assert claim.service_center == SERVICE_CENTER
        assert claim.service_notes == "Replaced"
        assert claim.processed_at is not None

        report = service.check_warranty_status("P-1")
        assert report.used_claims == 1
        assert report.status == WarrantyStatus.ACTIVE
        assert service.get_events()[-1].event_type == EventType.WARRANTY_CLAIM_PROCESSED

    def test_reject_does_not_use_a_claim(self, service, owned_product):
        service.submit_warranty_claim(CUSTOMER, "P-1", "Scratched")
        service.process_warranty_claim(SERVICE_CENTER, "P-1", 0, "rejected", "Cosmetic")
        assert service.check_warranty_status("P-1").used_claims == 0

    def test_claim_processed_exactly_once(self, service, owned_product):
        service.submit_warranty_claim(CUSTOMER, "P-1", "Broken")
        service.process_warranty_claim(SERVICE_CENTER, "P-1", 0, ClaimStatus.REJECTED)
        with pytest.raises(InvalidStateError):
            service.process_warranty_claim(SERVICE_CENTER, "P-1", 0, ClaimStatus.APPROVED)

    def test_process_requires_service_center(self, service, owned_product):
        service.submit_warranty_claim(CUSTOMER, "P-1", "Broken")
        with pytest.raises(UnauthorizedError):
            service.process_warranty_claim(RETAILER, "P-1", 0, ClaimStatus.APPROVED)

    def test_process_unknown_claim(self, service, owned_product):
        with pytest.raises(NotFoundError):
            service.process_warranty_claim(SERVICE_CENTER, "P-1", 0, ClaimStatus.APPROVED)
        with pytest.raises(NotFoundError):
            service.process_warranty_claim(SERVICE_CENTER, "P-1", -1, ClaimStatus.APPROVED)

    @pytest.mark.parametrize("status", [ClaimStatus.PENDING, ClaimStatus.COMPLETED, "fixed"])
    def test_process_rejects_other_outcomes(self, service, owned_product, status):
        service.submit_warranty_claim(CUSTOMER, "P-1", "Broken")
        with pytest.raises(InvalidArgumentError):
            service.process_warranty_claim(SERVICE_CENTER, "P-1", 0, status)

    def test_last_approval_reaches_limit(self, service, owned_product):
        for i in range(2):
            service.submit_warranty_claim(CUSTOMER, "P-1", f"Failure {i}")
            service.process_warranty_claim(SERVICE_CENTER, "P-1", i, ClaimStatus.APPROVED)

        report = service.check_warranty_status("P-1")
        assert report.used_claims == 2
        assert report.status == WarrantyStatus.CLAIM_LIMIT_REACHED

        last = service.get_events()[-1]
        assert last.event_type == EventType.WARRANTY_STATUS_CHANGED
        assert last.payload["new_status"] == "claim_limit_reached"

    def test_approval_beyond_limit_rejected(self, service, clock):
        service.register_product(MANUFACTURER, "P-9", "SN", "M", "", 365, 1)
        service.transfer_to_retailer(MANUFACTURER, "P-9", RETAILER)
        service.sell_to_customer(RETAILER, "P-9", CUSTOMER)
        service.submit_warranty_claim(CUSTOMER, "P-9", "First")
        service.submit_warranty_claim(CUSTOMER, "P-9", "Second")

        service.process_warranty_claim(SERVICE_CENTER, "P-9", 0, ClaimStatus.APPROVED)
        with pytest.raises(InvalidStateError):
            service.process_warranty_claim(SERVICE_CENTER, "P-9", 1, ClaimStatus.APPROVED)
        assert service.check_warranty_status("P-9").used_claims == 1

        service.process_warranty_claim(SERVICE_CENTER, "P-9", 1, ClaimStatus.REJECTED)

    def test_log_service_action(self, service, owned_product, clock):
        claim_id = service.log_service_action(SERVICE_CENTER, "P-1", "Annual service", "filter")
        assert claim_id == 0

        entry = service.get_warranty_history(CUSTOMER, "P-1")[0]
        assert entry.status == ClaimStatus.COMPLETED
        assert entry.customer == CUSTOMER
        assert entry.service_center == SERVICE_CENTER
        assert entry.service_notes == "filter"
        assert entry.submitted_at == entry.processed_at == clock.now

        assert service.check_warranty_status("P-1").used_claims == 0
        assert service.get_events()[-1].event_type == EventType.SERVICE_ACTION_LOGGED

    def test_service_log_shares_claim_sequence(self, service, owned_product):
        assert service.log_service_action(SERVICE_CENTER, "P-1", "Service") == 0
        assert service.submit_warranty_claim(CUSTOMER, "P-1", "Broken") == 1
        with pytest.raises(InvalidStateError):
            service.process_warranty_claim(SERVICE_CENTER, "P-1", 0, ClaimStatus.APPROVED)

    def test_log_service_action_requires_service_center(self, service, owned_product):
        with pytest.raises(UnauthorizedError):
            service.log_service_action(CUSTOMER, "P-1", "DIY")

    def test_claim_ids_scoped_per_product(self, service, owned_product):
        service.register_product(MANUFACTURER, "P-2", "SN-2", "M", "", 365, 1)
        assert service.log_service_action(SERVICE_CENTER, "P-1", "a") == 0
        assert service.log_service_action(SERVICE_CENTER, "P-2", "b") == 0


class TestVisibility:
    def test_full_details_by_default(self, service, owned_product):
        details = service.get_product_details(STRANGER, "P-1")
        assert details.serial_number == "SN-0001"
        assert details.specifications == "8GB"
        assert details.is_visible

    def test_opted_out_product_is_masked_for_third_parties(self, service, owned_product):
        service.set_product_visibility(CUSTOMER, "P-1", False)

        masked = service.get_product_details(STRANGER, "P-1")
        assert masked.serial_number == REDACTED
        assert masked.specifications == REDACTED
        assert masked.model == "Widget"
        assert not masked.is_visible

        for caller in (CUSTOMER, ADMIN):
            full = service.get_product_details(caller, "P-1")
            assert full.serial_number == "SN-0001"
            assert full.specifications == "8GB"

    def test_opted_out_histories_empty_for_third_parties(self, service, owned_product):
        service.log_service_action(SERVICE_CENTER, "P-1", "Service")
        service.set_product_visibility(CUSTOMER, "P-1", False)

        assert service.get_ownership_history(STRANGER, "P-1") == []
        assert service.get_warranty_history(STRANGER, "P-1") == []
        assert len(service.get_ownership_history(CUSTOMER, "P-1")) == 3
        assert len(service.get_warranty_history(ADMIN, "P-1")) == 1

    def test_hidden_records_filtered_in_order(self, service, owned_product):
        service.set_ownership_record_visibility(CUSTOMER, "P-1", 1, False)

        seen = service.get_ownership_history(STRANGER, "P-1")
        assert [r.sequence for r in seen] == [0, 2]
        assert len(service.get_ownership_history(CUSTOMER, "P-1")) == 3
        assert len(service.get_ownership_history(ADMIN, "P-1")) == 3

    def test_hidden_claims_filtered(self, service, owned_product):
        service.log_service_action(SERVICE_CENTER, "P-1", "one")
        service.log_service_action(SERVICE_CENTER, "P-1", "two")
        claim = service.set_claim_visibility(CUSTOMER, "P-1", 0, False)
        assert not claim.is_visible

        assert [c.claim_id for c in service.get_warranty_history(STRANGER, "P-1")] == [1]
        assert [c.claim_id for c in service.get_warranty_history(CUSTOMER, "P-1")] == [0, 1]

    def test_everyone_but_admin_policy(self, clock):
        settings = LedgerSettings(hidden_record_policy=HiddenRecordPolicy.EVERYONE_BUT_ADMIN)
        service = ProvenanceService(settings=settings, clock=clock)
        service.assign_role(ADMIN, MANUFACTURER, Role.MANUFACTURER)
        service.register_product(MANUFACTURER, "P-1", "SN", "M", "", 365, 1)
        service.set_ownership_record_visibility(MANUFACTURER, "P-1", 0, False)

        assert service.get_ownership_history(MANUFACTURER, "P-1") == []
        assert len(service.get_ownership_history(ADMIN, "P-1")) == 1

    def test_hidden_record_goes_to_new_owner(self, service, owned_product):
        service.set_ownership_record_visibility(CUSTOMER, "P-1", 0, False)
        service.resell_product(CUSTOMER, "P-1", OTHER_CUSTOMER)
        assert [r.sequence for r in service.get_ownership_history(CUSTOMER, "P-1")] == [1, 2, 3]

    def test_only_owner_changes_visibility(self, service, owned_product):
        with pytest.raises(UnauthorizedError):
            service.set_product_visibility(RETAILER, "P-1", False)
        with pytest.raises(UnauthorizedError):
            service.set_ownership_record_visibility(ADMIN, "P-1", 0, False)
        with pytest.raises(UnauthorizedError):
            service.set_claim_visibility(STRANGER, "P-1", 0, False)

    def test_unknown_record(self, service, owned_product):
        with pytest.raises(NotFoundError):
            service.set_ownership_record_visibility(CUSTOMER, "P-1", 3, False)
        with pytest.raises(NotFoundError):
            service.set_claim_visibility(CUSTOMER, "P-1", 0, False)

    def test_queries_on_unknown_product(self, service):
        for query in (
            service.get_product_details,
            service.get_ownership_history,
            service.get_warranty_history,
            service.verify_product_ownership,
        ):
            with pytest.raises(NotFoundError):
                query(STRANGER, "nope")

    def test_verify_product_ownership(self, service, owned_product):
        assert service.verify_product_ownership(CUSTOMER, "P-1")
        assert not service.verify_product_ownership(RETAILER, "P-1")

    def test_visibility_change_is_audited(self, service, owned_product):
        service.set_product_visibility(CUSTOMER, "P-1", False)
        event = service.get_events()[-1]
        assert event.event_type == EventType.VISIBILITY_CHANGED
        assert event.payload == {
            "product_id": "P-1",
            "target": "product",
            "index": None,
            "is_visible": False,
            "schema_version": 1,
        }


class TestAuditLog:
    def test_admin_only(self, service, product):
        with pytest.raises(UnauthorizedError):
            service.get_audit_log(MANUFACTURER)
        assert len(service.get_audit_log(ADMIN)) == service.event_count

    def test_filter_by_entity(self, service, product):
        events = service.get_audit_log(ADMIN, "P-1")
        assert [e.event_type for e in events] == [EventType.PRODUCT_REGISTERED]

    def test_failed_operation_writes_nothing(self, service, product):
        before = service.get_events()
        with pytest.raises(UnauthorizedError):
            service.transfer_to_retailer(MANUFACTURER, "P-1", CUSTOMER)
        assert service.get_events() == before

    def test_subscribers_receive_committed_events(self, service, product):
        received = []
        service.subscribe(received.append)

        service.transfer_to_retailer(MANUFACTURER, "P-1", RETAILER)
        with pytest.raises(UnauthorizedError):
            service.sell_to_customer(MANUFACTURER, "P-1", CUSTOMER)

        assert [e.event_type for e in received] == [EventType.OWNERSHIP_TRANSFERRED]
        assert received[0] == service.get_events()[-1]

    def test_failing_subscriber_does_not_undo_commit(self, service, product):
        def broken(event):
            raise RuntimeError("mail server down")

        service.subscribe(broken)
        service.transfer_to_retailer(MANUFACTURER, "P-1", RETAILER)
        assert service.get_product_details(ADMIN, "P-1").current_owner == RETAILER

    def test_chain_stays_valid(self, service, owned_product):
        service.submit_warranty_claim(CUSTOMER, "P-1", "Broken")
        service.process_warranty_claim(SERVICE_CENTER, "P-1", 0, ClaimStatus.APPROVED)
        assert service.verify_chain_integrity()


class TestEndToEnd:
    def test_claims_until_limit(self, service, clock):
        service.register_product(MANUFACTURER, "P", "SN-P", "Model", "", 365, 2)
        service.transfer_to_retailer(MANUFACTURER, "P", RETAILER)
        sale_time = clock.advance(days=45)
        service.sell_to_customer(RETAILER, "P", CUSTOMER)
        assert service.check_warranty_status("P").start_date == sale_time

        clock.advance(days=1)
        assert service.submit_warranty_claim(CUSTOMER, "P", "Dead pixel") == 0
        service.process_warranty_claim(SERVICE_CENTER, "P", 0, ClaimStatus.APPROVED)
        report = service.check_warranty_status("P")
        assert report.used_claims == 1
        assert report.status == WarrantyStatus.ACTIVE

        assert service.submit_warranty_claim(CUSTOMER, "P", "Battery") == 1
        service.process_warranty_claim(SERVICE_CENTER, "P", 1, ClaimStatus.APPROVED)
        report = service.check_warranty_status("P")
        assert report.used_claims == 2
        assert report.status == WarrantyStatus.CLAIM_LIMIT_REACHED

        with pytest.raises(InvalidStateError):
            service.submit_warranty_claim(CUSTOMER, "P", "Hinge")

        assert service.verify_chain_integrity()

    def test_resale(self, service):
        service.register_product(MANUFACTURER, "P", "SN-P", "Model", "", 365, 2)
        service.transfer_to_retailer(MANUFACTURER, "P", RETAILER)
        service.sell_to_customer(RETAILER, "P", CUSTOMER)
        service.resell_product(CUSTOMER, "P", OTHER_CUSTOMER, "marketplace")

        history = service.get_ownership_history(ADMIN, "P")
        assert [r.owner for r in history] == [MANUFACTURER, RETAILER, CUSTOMER, OTHER_CUSTOMER]
        assert [r.role for r in history] == [
            Role.MANUFACTURER, Role.RETAILER, Role.CUSTOMER, Role.CUSTOMER,
        ]
        assert "P" not in service.get_user_products(CUSTOMER)
        assert "P" in service.get_user_products(OTHER_CUSTOMER)
        assert service.verify_chain_integrity()
