"""Product Provenance & Warranty Ledger."""

from .core.service import ProvenanceService, verify_event_chain
from .config import HiddenRecordPolicy, LedgerSettings

__all__ = [
    "ProvenanceService",
    "verify_event_chain",
    "HiddenRecordPolicy",
    "LedgerSettings",
]
