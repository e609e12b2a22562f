"""Shared fixtures: a controllable clock and a service with the supply chain roles assigned."""

from datetime import datetime, timedelta, timezone

import pytest

from provenance.config import LedgerSettings
from provenance.core.service import ProvenanceService
from provenance.schemas import Role


T0 = datetime(2024, 1, 1, 9, 0, 0, tzinfo=timezone.utc)

ADMIN = "admin"
MANUFACTURER = "acme"
OTHER_MANUFACTURER = "globex"
RETAILER = "shop"
CUSTOMER = "alice"
OTHER_CUSTOMER = "bob"
SERVICE_CENTER = "fixit"
STRANGER = "eve"


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return LedgerSettings(admin_principal=ADMIN, retry_backoff_seconds=0)


@pytest.fixture
def service(clock, settings):
    """A service where every supply chain role is already assigned."""
    svc = ProvenanceService(settings=settings, clock=clock)
    svc.assign_role(ADMIN, MANUFACTURER, Role.MANUFACTURER)
    svc.assign_role(ADMIN, OTHER_MANUFACTURER, Role.MANUFACTURER)
    svc.assign_role(ADMIN, RETAILER, Role.RETAILER)
    svc.assign_role(ADMIN, CUSTOMER, Role.CUSTOMER)
    svc.assign_role(ADMIN, OTHER_CUSTOMER, Role.CUSTOMER)
    svc.add_service_center(ADMIN, SERVICE_CENTER)
    return svc


@pytest.fixture
def product(service):
    """P-1: registered by acme, 365 day warranty, 2 claims."""
    return service.register_product(MANUFACTURER, "P-1", "SN-0001", "Widget", "8GB", 365, 2)


@pytest.fixture
def owned_product(service, product, clock):
    """P-1 after acme -> shop -> alice."""
    service.transfer_to_retailer(MANUFACTURER, "P-1", RETAILER, "pallet 7")
    clock.advance(days=10)
    service.sell_to_customer(RETAILER, "P-1", CUSTOMER, "receipt 42")
    return service.get_product_details(ADMIN, "P-1")
