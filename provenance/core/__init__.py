# Core ledger services
#
# Only leaf modules are re-exported here. The services import the state
# store, which imports the hasher from this package; import them from
# their own modules (provenance.core.service etc).
from .clock import utc_now
from .errors import (
    LedgerError,
    UnauthorizedError,
    NotFoundError,
    AlreadyExistsError,
    InvalidArgumentError,
    InvalidStateError,
    ConcurrencyConflictError,
)
from .hasher import Hasher, CanonicalSerializationError, event_envelope

__all__ = [
    "utc_now",
    "LedgerError",
    "UnauthorizedError",
    "NotFoundError",
    "AlreadyExistsError",
    "InvalidArgumentError",
    "InvalidStateError",
    "ConcurrencyConflictError",
    "Hasher",
    "CanonicalSerializationError",
    "event_envelope",
]
