"""
Visibility Filter

Decides what a caller may read about a product.

- The admin and the current owner see full product detail.
- Anyone else sees serial_number and specifications masked when the owner
  has opted out (product.is_visible = False).
- History records flagged hidden are dropped for third parties, and for
  the owner too under HiddenRecordPolicy.EVERYONE_BUT_ADMIN. The admin
  always sees every record.
- A third party gets no history at all when the owner has opted out.

Filtered lists keep the original order and carry no hint of what was removed.
"""

from typing import TypeVar, Union

from ..config import HiddenRecordPolicy, LedgerSettings
from ..schemas import OwnershipRecord, Product, ProductDetails, WarrantyClaim, WarrantyReport

REDACTED = "[redacted]"

Record = TypeVar("Record", bound=Union[OwnershipRecord, WarrantyClaim])


class VisibilityFilter:
    def __init__(self, settings: LedgerSettings):
        self._settings = settings

    def is_privileged(self, caller: str, product: Product) -> bool:
        return caller == self._settings.admin_principal or caller == product.current_owner

    def product_details(self, caller: str, product: Product, warranty: WarrantyReport) -> ProductDetails:
        masked = not product.is_visible and not self.is_privileged(caller, product)
        return ProductDetails(
            product_id=product.product_id,
            serial_number=REDACTED if masked else product.serial_number,
            model=product.model,
            specifications=REDACTED if masked else product.specifications,
            manufacturer=product.manufacturer,
            current_owner=product.current_owner,
            manufactured_at=product.manufactured_at,
            warranty=warranty,
            is_visible=product.is_visible,
        )

    def filter_records(self, caller: str, product: Product, records: list[Record]) -> list[Record]:
        if caller == self._settings.admin_principal:
            return list(records)
        if caller == product.current_owner:
            if self._settings.hidden_record_policy == HiddenRecordPolicy.THIRD_PARTIES:
                return list(records)
        elif not product.is_visible:
            return []
        return [r for r in records if r.is_visible]
