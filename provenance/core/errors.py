"""
Ledger errors.

Every failed operation raises exactly one of these. Nothing is persisted
when they are raised: the transaction's staged writes are discarded.
"""


class LedgerError(Exception):
    """Base exception for ledger errors."""
    code = "ledger_error"


class UnauthorizedError(LedgerError):
    """Role, ownership or service center precondition failed."""
    code = "unauthorized"


class NotFoundError(LedgerError):
    """Product, claim or history record does not exist."""
    code = "not_found"


class AlreadyExistsError(LedgerError):
    """Product key is already registered."""
    code = "already_exists"


class InvalidArgumentError(LedgerError):
    """Malformed input."""
    code = "invalid_argument"


class InvalidStateError(LedgerError):
    """Operation not valid in the current lifecycle state."""
    code = "invalid_state"


class ConcurrencyConflictError(LedgerError):
    """Bounded retries exhausted. The caller may retry the whole operation."""
    code = "concurrency_conflict"
