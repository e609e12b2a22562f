"""
State Store Abstraction

This module defines the StateStore interface and two implementations:
- InMemoryStateStore: For development and testing
- PostgresStateStore: For production with durability and row-level safety

The StateStore is responsible for:
- Per-key locking for the duration of a mutation
- Atomic commit of products, ownership history, claims, the user product
  index, principals and audit events
- Optimistic version checks on product writes
- Audit chain head management (sequence numbers and previous hashes)

The services retain responsibility for:
- Authorization and business rules
- Warranty and claim state machines

TRANSACTION CONTRACT:
All writes go through the begin() context manager:

    with store.begin(["product:P-1"]) as txn:
        product = txn.get_product("P-1")
        ...
        txn.put_product(product)
        txn.emit(PendingEvent(...))
        events = txn.commit()

Leaving the block without commit() discards every staged write.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generator, Iterable, Optional
from uuid import UUID, uuid4

from ..core.hasher import Hasher, event_envelope
from ..schemas import (
    ClaimStatus,
    EventType,
    LedgerEvent,
    OwnershipRecord,
    Principal,
    Product,
    Role,
    WarrantyClaim,
    WarrantyInfo,
    WarrantyStatus,
)

logger = logging.getLogger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class StateStoreError(Exception):
    """Base exception for state store errors."""
    pass


class ConcurrencyError(StateStoreError):
    """Raised when a version check or sequence check fails at commit."""
    pass


class LockTimeoutError(StateStoreError):
    """Raised when a key lock cannot be acquired in time."""
    pass


class ChainIntegrityError(StateStoreError):
    """Raised when audit chain validation fails."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ChainHead:
    """Current state of the audit chain head."""
    last_sequence: int  # -1 means empty log
    last_event_hash: Optional[str]

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    @property
    def is_empty(self) -> bool:
        return self.last_sequence == -1


@dataclass
class ProductSnapshot:
    """A product with its histories, read at a single point in time."""
    product: Product
    ownership: list[OwnershipRecord]
    claims: list[WarrantyClaim]


@dataclass
class PendingEvent:
    """An audit event staged in a transaction. Sequence and hash are assigned at commit."""
    event_type: EventType
    entity_id: str
    entity_type: str
    payload: dict[str, Any]
    created_by: str
    created_at: datetime


def product_key(product_id: str) -> str:
    return f"product:{product_id}"


def principal_key(principal_id: str) -> str:
    return f"principal:{principal_id}"


# ============================================================
# TRANSACTION
# ============================================================

class StoreTransaction:
    """
    Unit of work over a StateStore.

    Reads see committed state overlaid with this transaction's own staged
    writes. Nothing reaches the store until commit().

    THREAD SAFETY: A transaction belongs to the thread that opened it.
    Connection state (if any) lives here, not on the store.
    """

    def __init__(self, store: "StateStore", keys: Iterable[str], conn: Any = None, cursor: Any = None):
        self._store = store
        self.keys = tuple(keys)
        self._conn = conn
        self._cursor = cursor
        self._committed = False

        # product_id -> version seen when first read (None = did not exist)
        self._read_versions: dict[str, Optional[int]] = {}

        self.products: dict[str, Product] = {}
        self.new_ownership: dict[str, list[OwnershipRecord]] = {}
        self.ownership_visibility: dict[tuple[str, int], bool] = {}
        self.new_claims: dict[str, list[WarrantyClaim]] = {}
        self.updated_claims: dict[tuple[str, int], WarrantyClaim] = {}
        self.index_moves: list[tuple[str, Optional[str], str]] = []
        self.principals: dict[str, Principal] = {}
        self.events: list[PendingEvent] = []

    @property
    def committed(self) -> bool:
        return self._committed

    # ---------------- reads ----------------

    def get_product(self, product_id: str) -> Optional[Product]:
        if product_id in self.products:
            return self.products[product_id]
        product = self._store._load_product(self, product_id)
        self._read_versions.setdefault(
            product_id, product.version if product is not None else None
        )
        return product

    def get_ownership(self, product_id: str) -> list[OwnershipRecord]:
        records = self._store._load_ownership(self, product_id)
        records.extend(self.new_ownership.get(product_id, []))
        return [
            r.model_copy(update={"is_visible": self.ownership_visibility[(product_id, r.sequence)]})
            if (product_id, r.sequence) in self.ownership_visibility else r
            for r in records
        ]

    def get_claims(self, product_id: str) -> list[WarrantyClaim]:
        claims = self._store._load_claims(self, product_id)
        claims.extend(self.new_claims.get(product_id, []))
        return [self.updated_claims.get((product_id, c.claim_id), c) for c in claims]

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        if principal_id in self.principals:
            return self.principals[principal_id]
        return self._store._load_principal(self, principal_id)

    # ---------------- writes ----------------

    def put_product(self, product: Product) -> None:
        if product.product_id not in self._read_versions:
            raise StateStoreError(
                f"Product {product.product_id} must be read before it is written"
            )
        self.products[product.product_id] = product

    def append_ownership(self, product_id: str, record: OwnershipRecord) -> None:
        expected = len(self.get_ownership(product_id))
        if record.sequence != expected:
            raise ChainIntegrityError(
                f"Ownership record for {product_id} has sequence {record.sequence}, "
                f"expected {expected}"
            )
        self.new_ownership.setdefault(product_id, []).append(record)

    def set_ownership_visibility(self, product_id: str, sequence: int, is_visible: bool) -> None:
        self.ownership_visibility[(product_id, sequence)] = is_visible

    def append_claim(self, product_id: str, claim: WarrantyClaim) -> None:
        expected = len(self.get_claims(product_id))
        if claim.claim_id != expected:
            raise ChainIntegrityError(
                f"Claim for {product_id} has id {claim.claim_id}, expected {expected}"
            )
        self.new_claims.setdefault(product_id, []).append(claim)

    def update_claim(self, product_id: str, claim: WarrantyClaim) -> None:
        staged = self.new_claims.get(product_id, [])
        for i, existing in enumerate(staged):
            if existing.claim_id == claim.claim_id:
                staged[i] = claim
                return
        self.updated_claims[(product_id, claim.claim_id)] = claim

    def move_product(self, product_id: str, from_owner: Optional[str], to_owner: str) -> None:
        """Move product_id between owners' index entries. from_owner=None for registration."""
        self.index_moves.append((product_id, from_owner, to_owner))

    def put_principal(self, principal: Principal) -> None:
        self.principals[principal.principal_id] = principal

    def emit(self, event: PendingEvent) -> None:
        self.events.append(event)

    def commit(self) -> list[LedgerEvent]:
        """Apply every staged write atomically and return the sealed audit events."""
        if self._committed:
            raise StateStoreError("Transaction already committed")
        for product_id, product in self.products.items():
            expected = self._read_versions[product_id]
            product.version = 0 if expected is None else expected + 1
        events = self._store._do_commit(self)
        self._committed = True
        return events


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class StateStore(ABC):
    """
    Abstract base class for ledger state storage.

    Implementations must ensure:
    1. begin() serializes transactions that share a key
    2. commit applies all staged writes or none
    3. Product writes fail with ConcurrencyError if the version moved
    4. Audit events get gap-free sequence numbers and correct chain linkage
    """

    DEFAULT_LOCK_TIMEOUT = 2.0  # seconds

    @contextmanager
    @abstractmethod
    def begin(
        self,
        keys: Iterable[str],
        timeout: Optional[float] = None,
    ) -> Generator[StoreTransaction, None, None]:
        """
        Begin a transaction holding locks on the given keys.

        Raises LockTimeoutError if a key stays busy past the timeout.
        """
        pass

    # Internal hooks used by StoreTransaction

    @abstractmethod
    def _load_product(self, txn: StoreTransaction, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    def _load_ownership(self, txn: StoreTransaction, product_id: str) -> list[OwnershipRecord]:
        pass

    @abstractmethod
    def _load_claims(self, txn: StoreTransaction, product_id: str) -> list[WarrantyClaim]:
        pass

    @abstractmethod
    def _load_principal(self, txn: StoreTransaction, principal_id: str) -> Optional[Principal]:
        pass

    @abstractmethod
    def _do_commit(self, txn: StoreTransaction) -> list[LedgerEvent]:
        pass

    # Snapshot reads

    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    def read_product_snapshot(self, product_id: str) -> Optional[ProductSnapshot]:
        pass

    @abstractmethod
    def get_user_products(self, principal_id: str) -> list[str]:
        """Product keys currently owned by a principal, sorted."""
        pass

    @abstractmethod
    def get_principal(self, principal_id: str) -> Optional[Principal]:
        pass

    @abstractmethod
    def list_events(self) -> list[LedgerEvent]:
        """All audit events ordered by sequence number."""
        pass

    @abstractmethod
    def list_events_for_entity(self, entity_id: str) -> list[LedgerEvent]:
        pass

    @abstractmethod
    def get_head(self) -> ChainHead:
        pass

    def get_event_count(self) -> int:
        return self.get_head().next_sequence

    @staticmethod
    def _seal_events(pending: list[PendingEvent], head: ChainHead) -> list[LedgerEvent]:
        """Assign sequence numbers and chained hashes to staged events."""
        sealed = []
        last_sequence, last_hash = head.last_sequence, head.last_event_hash
        for p in pending:
            sequence = last_sequence + 1
            previous_hash = last_hash if sequence > 0 else None
            if sequence > 0 and previous_hash is None:
                raise ChainIntegrityError(
                    f"Cannot create event with sequence {sequence}: "
                    "previous event hash is missing but this is not genesis"
                )
            envelope = event_envelope(
                p.event_type, p.entity_id, p.entity_type,
                p.payload, p.created_by, p.created_at,
            )
            event = LedgerEvent(
                event_id=uuid4(),
                sequence_number=sequence,
                event_type=p.event_type,
                entity_id=p.entity_id,
                entity_type=p.entity_type,
                payload=p.payload,
                previous_event_hash=previous_hash,
                event_hash=Hasher.hash_event(envelope, previous_hash),
                created_by=p.created_by,
                created_at=p.created_at,
            )
            event.validate_chain_rules()
            sealed.append(event)
            last_sequence, last_hash = sequence, event.event_hash
        return sealed


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryStateStore(StateStore):
    """
    In-memory implementation of StateStore.

    Suitable for development, testing and single-process deployments
    without persistence requirements.

    Key locks serialize mutations per product/principal. A key lock lives
    only while some transaction holds or waits on it. A single state
    lock guards the tables so snapshot reads never observe a half-applied
    commit.
    """

    def __init__(self, lock_timeout: float = StateStore.DEFAULT_LOCK_TIMEOUT):
        self._lock_timeout = lock_timeout
        self._state_lock = threading.RLock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._key_lock_users: dict[str, int] = {}
        self._key_locks_guard = threading.Lock()

        self._products: dict[str, Product] = {}
        self._ownership: dict[str, list[OwnershipRecord]] = {}
        self._claims: dict[str, list[WarrantyClaim]] = {}
        self._user_products: dict[str, set[str]] = {}
        self._principals: dict[str, Principal] = {}
        self._events: list[LedgerEvent] = []
        self._head = ChainHead(last_sequence=-1, last_event_hash=None)

    def _checkout_lock(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            self._key_lock_users[key] = self._key_lock_users.get(key, 0) + 1
            return self._key_locks.setdefault(key, threading.Lock())

    def _checkin_lock(self, key: str) -> None:
        with self._key_locks_guard:
            self._key_lock_users[key] -= 1
            if not self._key_lock_users[key]:
                del self._key_lock_users[key]
                del self._key_locks[key]

    @contextmanager
    def begin(
        self,
        keys: Iterable[str],
        timeout: Optional[float] = None,
    ) -> Generator[StoreTransaction, None, None]:
        """Begin a transaction, taking key locks in sorted order."""
        timeout = self._lock_timeout if timeout is None else timeout
        ordered = sorted(set(keys))
        checked_out = []
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout_lock(key)
                checked_out.append(key)
                if not lock.acquire(timeout=timeout):
                    raise LockTimeoutError(
                        f"{key} is busy - could not acquire lock. Try again."
                    )
                acquired.append(lock)
            yield StoreTransaction(self, ordered)
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in checked_out:
                self._checkin_lock(key)

    def _load_product(self, txn: StoreTransaction, product_id: str) -> Optional[Product]:
        return self.get_product(product_id)

    def _load_ownership(self, txn: StoreTransaction, product_id: str) -> list[OwnershipRecord]:
        with self._state_lock:
            return [r.model_copy() for r in self._ownership.get(product_id, [])]

    def _load_claims(self, txn: StoreTransaction, product_id: str) -> list[WarrantyClaim]:
        with self._state_lock:
            return [c.model_copy() for c in self._claims.get(product_id, [])]

    def _load_principal(self, txn: StoreTransaction, principal_id: str) -> Optional[Principal]:
        return self.get_principal(principal_id)

    def _do_commit(self, txn: StoreTransaction) -> list[LedgerEvent]:
        """Validate every staged write, then apply them all under the state lock."""
        with self._state_lock:
            for product_id in txn.products:
                current = self._products.get(product_id)
                current_version = current.version if current is not None else None
                if current_version != txn._read_versions[product_id]:
                    raise ConcurrencyError(
                        f"Product {product_id} changed since it was read "
                        f"(read version {txn._read_versions[product_id]}, "
                        f"now {current_version})"
                    )

            for product_id, records in txn.new_ownership.items():
                if records[0].sequence != len(self._ownership.get(product_id, [])):
                    raise ConcurrencyError(f"Ownership history for {product_id} moved")

            for product_id, claims in txn.new_claims.items():
                if claims[0].claim_id != len(self._claims.get(product_id, [])):
                    raise ConcurrencyError(f"Claim list for {product_id} moved")

            events = self._seal_events(txn.events, self._head)

            # All checks passed - apply
            for product_id, product in txn.products.items():
                self._products[product_id] = product.model_copy(deep=True)

            for product_id, records in txn.new_ownership.items():
                self._ownership.setdefault(product_id, []).extend(
                    r.model_copy() for r in records
                )

            for (product_id, sequence), is_visible in txn.ownership_visibility.items():
                history = self._ownership[product_id]
                history[sequence] = history[sequence].model_copy(update={"is_visible": is_visible})

            for product_id, claims in txn.new_claims.items():
                self._claims.setdefault(product_id, []).extend(c.model_copy() for c in claims)

            for (product_id, claim_id), claim in txn.updated_claims.items():
                self._claims[product_id][claim_id] = claim.model_copy()

            for product_id, from_owner, to_owner in txn.index_moves:
                if from_owner is not None:
                    self._user_products.get(from_owner, set()).discard(product_id)
                self._user_products.setdefault(to_owner, set()).add(product_id)

            for principal_id, principal in txn.principals.items():
                self._principals[principal_id] = principal.model_copy()

            self._events.extend(events)
            if events:
                self._head = ChainHead(
                    last_sequence=events[-1].sequence_number,
                    last_event_hash=events[-1].event_hash,
                )

            return events

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._state_lock:
            product = self._products.get(product_id)
            return product.model_copy(deep=True) if product is not None else None

    def read_product_snapshot(self, product_id: str) -> Optional[ProductSnapshot]:
        with self._state_lock:
            product = self._products.get(product_id)
            if product is None:
                return None
            return ProductSnapshot(
                product=product.model_copy(deep=True),
                ownership=[r.model_copy() for r in self._ownership.get(product_id, [])],
                claims=[c.model_copy() for c in self._claims.get(product_id, [])],
            )

    def get_user_products(self, principal_id: str) -> list[str]:
        with self._state_lock:
            return sorted(self._user_products.get(principal_id, ()))

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._state_lock:
            principal = self._principals.get(principal_id)
            return principal.model_copy() if principal is not None else None

    def list_events(self) -> list[LedgerEvent]:
        with self._state_lock:
            return list(self._events)

    def list_events_for_entity(self, entity_id: str) -> list[LedgerEvent]:
        with self._state_lock:
            return [e for e in self._events if e.entity_id == entity_id]

    def get_head(self) -> ChainHead:
        with self._state_lock:
            return ChainHead(
                last_sequence=self._head.last_sequence,
                last_event_hash=self._head.last_event_hash,
            )


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS principals (
    principal_id        TEXT PRIMARY KEY,
    role                TEXT NOT NULL,
    is_service_center   BOOLEAN NOT NULL DEFAULT FALSE,
    assigned_at         TIMESTAMPTZ,
    assigned_by         TEXT
);

CREATE TABLE IF NOT EXISTS products (
    product_id                  TEXT PRIMARY KEY,
    serial_number               TEXT NOT NULL,
    model                       TEXT NOT NULL,
    specifications              TEXT NOT NULL DEFAULT '',
    manufacturer                TEXT NOT NULL,
    current_owner               TEXT NOT NULL,
    manufactured_at             TIMESTAMPTZ NOT NULL,
    warranty_start              TIMESTAMPTZ NOT NULL,
    warranty_duration_seconds   BIGINT NOT NULL CHECK (warranty_duration_seconds > 0),
    max_claims                  INTEGER NOT NULL CHECK (max_claims >= 0),
    used_claims                 INTEGER NOT NULL DEFAULT 0,
    warranty_status             TEXT NOT NULL,
    is_visible                  BOOLEAN NOT NULL DEFAULT TRUE,
    version                     INTEGER NOT NULL DEFAULT 0,
    CHECK (used_claims <= max_claims)
);

CREATE TABLE IF NOT EXISTS ownership_history (
    product_id      TEXT NOT NULL REFERENCES products (product_id),
    sequence        INTEGER NOT NULL,
    owner           TEXT NOT NULL,
    role            TEXT NOT NULL,
    transferred_at  TIMESTAMPTZ NOT NULL,
    details         TEXT NOT NULL DEFAULT '',
    is_visible      BOOLEAN NOT NULL DEFAULT TRUE,
    PRIMARY KEY (product_id, sequence)
);

CREATE TABLE IF NOT EXISTS warranty_claims (
    product_id      TEXT NOT NULL REFERENCES products (product_id),
    claim_id        INTEGER NOT NULL,
    customer        TEXT NOT NULL,
    service_center  TEXT NOT NULL DEFAULT '',
    description     TEXT NOT NULL,
    service_notes   TEXT NOT NULL DEFAULT '',
    submitted_at    TIMESTAMPTZ NOT NULL,
    processed_at    TIMESTAMPTZ,
    status          TEXT NOT NULL,
    is_visible      BOOLEAN NOT NULL DEFAULT TRUE,
    PRIMARY KEY (product_id, claim_id)
);

CREATE TABLE IF NOT EXISTS user_products (
    principal_id    TEXT NOT NULL,
    product_id      TEXT NOT NULL REFERENCES products (product_id),
    PRIMARY KEY (principal_id, product_id)
);

CREATE TABLE IF NOT EXISTS ledger_events (
    sequence_number     BIGINT PRIMARY KEY,
    event_id            UUID NOT NULL UNIQUE,
    event_type          TEXT NOT NULL,
    entity_id           TEXT NOT NULL,
    entity_type         TEXT NOT NULL,
    payload_json        JSONB NOT NULL,
    previous_event_hash TEXT,
    event_hash          TEXT NOT NULL UNIQUE,
    created_by          TEXT NOT NULL,
    created_at          TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS ledger_events_entity_idx ON ledger_events (entity_id);

CREATE OR REPLACE RULE ledger_events_no_update AS
    ON UPDATE TO ledger_events DO INSTEAD NOTHING;
CREATE OR REPLACE RULE ledger_events_no_delete AS
    ON DELETE TO ledger_events DO INSTEAD NOTHING;

CREATE TABLE IF NOT EXISTS ledger_head (
    id              BOOLEAN PRIMARY KEY DEFAULT TRUE CHECK (id),
    last_sequence   BIGINT NOT NULL,
    last_event_hash TEXT
);

INSERT INTO ledger_head (id, last_sequence, last_event_hash)
VALUES (TRUE, -1, NULL)
ON CONFLICT (id) DO NOTHING;
"""

_PRODUCT_COLUMNS = """
    product_id, serial_number, model, specifications, manufacturer,
    current_owner, manufactured_at, warranty_start, warranty_duration_seconds,
    max_claims, used_claims, warranty_status, is_visible, version
"""

_OWNERSHIP_COLUMNS = "sequence, owner, role, transferred_at, details, is_visible"

_CLAIM_COLUMNS = """
    claim_id, product_id, customer, service_center, description, service_notes,
    submitted_at, processed_at, status, is_visible
"""

_EVENT_COLUMNS = """
    event_id, sequence_number, event_type, entity_id, entity_type,
    payload_json, previous_event_hash, event_hash, created_by, created_at
"""


class PostgresStateStore(StateStore):
    """
    PostgreSQL implementation of StateStore.

    Provides:
    - Full ACID guarantees (one database transaction per StoreTransaction)
    - Per-key serialization via transaction-scoped advisory locks
    - Optimistic version checks on product rows
    - Lock/statement timeouts to prevent hanging

    THREAD SAFETY:
    Connections live on the StoreTransaction, never on the store, so one
    store instance can be shared across threads.

    Usage:
        store = PostgresStateStore(connection_factory)
        store.create_schema()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    # psycopg2 error codes for lock/statement timeout
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for a key lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def create_schema(self) -> None:
        """Create tables, rules and the chain head row if missing."""
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def begin(
        self,
        keys: Iterable[str],
        timeout: Optional[float] = None,
    ) -> Generator[StoreTransaction, None, None]:
        """
        Begin a database transaction and take advisory locks on the keys.

        Advisory locks cover keys that have no row yet (a product being
        registered), which FOR UPDATE cannot.
        """
        lock_timeout_ms = self._lock_timeout_ms if timeout is None else int(timeout * 1000)
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        txn = None

        try:
            # SET LOCAL keeps the timeouts transaction-scoped
            cursor.execute(f"SET LOCAL lock_timeout = '{lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")

            for key in sorted(set(keys)):
                try:
                    cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (key,))
                except Exception as e:
                    kind = self._timeout_kind(e)
                    if kind == "lock":
                        raise LockTimeoutError(
                            f"{key} is busy - could not acquire lock. Try again."
                        ) from e
                    if kind == "statement":
                        raise StateStoreError(
                            "Query timed out - statement took too long."
                        ) from e
                    raise

            txn = StoreTransaction(self, sorted(set(keys)), conn=conn, cursor=cursor)
            yield txn

        finally:
            if txn is None or not txn.committed:
                try:
                    conn.rollback()
                except Exception:
                    logger.warning("Rollback failed; connection may be broken", exc_info=True)
            try:
                cursor.close()
            finally:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL exception as "lock", "statement", "timeout" or None.

        57014 (query_canceled) is used for both lock_timeout and
        statement_timeout, so the message decides between them.
        """
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            if 'statement timeout' in err_msg or 'statement_timeout' in err_msg:
                return "statement"
            return "timeout"

        if 'lock' in err_msg and 'timeout' in err_msg:
            return "lock"
        if 'statement' in err_msg and 'timeout' in err_msg:
            return "statement"

        return None

    # ---------------- row mapping ----------------

    @staticmethod
    def _row_to_product(row: tuple) -> Product:
        return Product(
            product_id=row[0],
            serial_number=row[1],
            model=row[2],
            specifications=row[3],
            manufacturer=row[4],
            current_owner=row[5],
            manufactured_at=row[6],
            warranty=WarrantyInfo(
                start_date=row[7],
                duration_seconds=row[8],
                max_claims=row[9],
                used_claims=row[10],
                status=WarrantyStatus(row[11]),
            ),
            is_visible=row[12],
            version=row[13],
        )

    @staticmethod
    def _row_to_ownership(row: tuple) -> OwnershipRecord:
        return OwnershipRecord(
            sequence=row[0],
            owner=row[1],
            role=Role(row[2]),
            transferred_at=row[3],
            details=row[4],
            is_visible=row[5],
        )

    @staticmethod
    def _row_to_claim(row: tuple) -> WarrantyClaim:
        return WarrantyClaim(
            claim_id=row[0],
            product_id=row[1],
            customer=row[2],
            service_center=row[3],
            description=row[4],
            service_notes=row[5],
            submitted_at=row[6],
            processed_at=row[7],
            status=ClaimStatus(row[8]),
            is_visible=row[9],
        )

    @staticmethod
    def _row_to_event(row: tuple) -> LedgerEvent:
        payload = row[5]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return LedgerEvent(
            event_id=UUID(row[0]) if isinstance(row[0], str) else row[0],
            sequence_number=row[1],
            event_type=EventType(row[2]),
            entity_id=row[3],
            entity_type=row[4],
            payload=payload,
            previous_event_hash=row[6],
            event_hash=row[7],
            created_by=row[8],
            created_at=row[9],
        )

    # ---------------- queries shared by txn and snapshot reads ----------------

    def _select_product(self, cursor, product_id: str) -> Optional[Product]:
        cursor.execute(
            f"SELECT {_PRODUCT_COLUMNS} FROM products WHERE product_id = %s",
            (product_id,),
        )
        row = cursor.fetchone()
        return self._row_to_product(row) if row else None

    def _select_ownership(self, cursor, product_id: str) -> list[OwnershipRecord]:
        cursor.execute(
            f"SELECT {_OWNERSHIP_COLUMNS} FROM ownership_history "
            "WHERE product_id = %s ORDER BY sequence",
            (product_id,),
        )
        return [self._row_to_ownership(row) for row in cursor.fetchall()]

    def _select_claims(self, cursor, product_id: str) -> list[WarrantyClaim]:
        cursor.execute(
            f"SELECT {_CLAIM_COLUMNS} FROM warranty_claims "
            "WHERE product_id = %s ORDER BY claim_id",
            (product_id,),
        )
        return [self._row_to_claim(row) for row in cursor.fetchall()]

    def _select_principal(self, cursor, principal_id: str) -> Optional[Principal]:
        cursor.execute(
            "SELECT principal_id, role, is_service_center, assigned_at, assigned_by "
            "FROM principals WHERE principal_id = %s",
            (principal_id,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return Principal(
            principal_id=row[0],
            role=Role(row[1]),
            is_service_center=row[2],
            assigned_at=row[3],
            assigned_by=row[4],
        )

    def _load_product(self, txn: StoreTransaction, product_id: str) -> Optional[Product]:
        return self._select_product(txn._cursor, product_id)

    def _load_ownership(self, txn: StoreTransaction, product_id: str) -> list[OwnershipRecord]:
        return self._select_ownership(txn._cursor, product_id)

    def _load_claims(self, txn: StoreTransaction, product_id: str) -> list[WarrantyClaim]:
        return self._select_claims(txn._cursor, product_id)

    def _load_principal(self, txn: StoreTransaction, principal_id: str) -> Optional[Principal]:
        return self._select_principal(txn._cursor, principal_id)

    # ---------------- commit ----------------

    def _do_commit(self, txn: StoreTransaction) -> list[LedgerEvent]:
        """Write every staged change within the transaction, then COMMIT."""
        if txn._cursor is None or txn._conn is None:
            raise StateStoreError("_do_commit called outside begin() context")

        cursor = txn._cursor

        for product_id, p in txn.products.items():
            expected = txn._read_versions[product_id]
            w = p.warranty
            if expected is None:
                cursor.execute(f"""
                    INSERT INTO products ({_PRODUCT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (product_id) DO NOTHING
                """, (
                    p.product_id, p.serial_number, p.model, p.specifications,
                    p.manufacturer, p.current_owner, p.manufactured_at,
                    w.start_date, w.duration_seconds, w.max_claims, w.used_claims,
                    w.status.value, p.is_visible, p.version,
                ))
            else:
                cursor.execute("""
                    UPDATE products SET
                        current_owner = %s, warranty_start = %s, used_claims = %s,
                        warranty_status = %s, is_visible = %s, version = %s
                    WHERE product_id = %s AND version = %s
                """, (
                    p.current_owner, w.start_date, w.used_claims, w.status.value,
                    p.is_visible, p.version, product_id, expected,
                ))
            if cursor.rowcount != 1:
                raise ConcurrencyError(
                    f"Product {product_id} changed since it was read (version {expected})"
                )

        for product_id, records in txn.new_ownership.items():
            for r in records:
                cursor.execute(f"""
                    INSERT INTO ownership_history (product_id, {_OWNERSHIP_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                """, (
                    product_id, r.sequence, r.owner, r.role.value,
                    r.transferred_at, r.details, r.is_visible,
                ))

        for (product_id, sequence), is_visible in txn.ownership_visibility.items():
            cursor.execute(
                "UPDATE ownership_history SET is_visible = %s "
                "WHERE product_id = %s AND sequence = %s",
                (is_visible, product_id, sequence),
            )

        for product_id, claims in txn.new_claims.items():
            for c in claims:
                self._insert_claim(cursor, c)

        for (product_id, claim_id), c in txn.updated_claims.items():
            cursor.execute("""
                UPDATE warranty_claims SET
                    service_center = %s, service_notes = %s, processed_at = %s,
                    status = %s, is_visible = %s
                WHERE product_id = %s AND claim_id = %s
            """, (
                c.service_center, c.service_notes, c.processed_at,
                c.status.value, c.is_visible, product_id, claim_id,
            ))

        for product_id, from_owner, to_owner in txn.index_moves:
            if from_owner is not None:
                cursor.execute(
                    "DELETE FROM user_products WHERE principal_id = %s AND product_id = %s",
                    (from_owner, product_id),
                )
            cursor.execute(
                "INSERT INTO user_products (principal_id, product_id) VALUES (%s, %s) "
                "ON CONFLICT DO NOTHING",
                (to_owner, product_id),
            )

        for principal in txn.principals.values():
            cursor.execute("""
                INSERT INTO principals (principal_id, role, is_service_center, assigned_at, assigned_by)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (principal_id) DO UPDATE SET
                    role = EXCLUDED.role,
                    is_service_center = EXCLUDED.is_service_center,
                    assigned_at = EXCLUDED.assigned_at,
                    assigned_by = EXCLUDED.assigned_by
            """, (
                principal.principal_id, principal.role.value, principal.is_service_center,
                principal.assigned_at, principal.assigned_by,
            ))

        events = []
        if txn.events:
            cursor.execute("""
                SELECT last_sequence, last_event_hash
                FROM ledger_head
                WHERE id = TRUE
                FOR UPDATE
            """)
            row = cursor.fetchone()
            if row is None:
                raise ChainIntegrityError("ledger_head row missing - run create_schema()")
            events = self._seal_events(
                txn.events, ChainHead(last_sequence=row[0], last_event_hash=row[1])
            )
            for event in events:
                cursor.execute(f"""
                    INSERT INTO ledger_events ({_EVENT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s)
                """, (
                    str(event.event_id), event.sequence_number, event.event_type.value,
                    event.entity_id, event.entity_type, json.dumps(event.payload),
                    event.previous_event_hash, event.event_hash,
                    event.created_by, event.created_at,
                ))
            cursor.execute("""
                UPDATE ledger_head
                SET last_sequence = %s, last_event_hash = %s
                WHERE id = TRUE
            """, (events[-1].sequence_number, events[-1].event_hash))

        txn._conn.commit()
        return events

    @staticmethod
    def _insert_claim(cursor, c: WarrantyClaim) -> None:
        cursor.execute(f"""
            INSERT INTO warranty_claims ({_CLAIM_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            c.claim_id, c.product_id, c.customer, c.service_center, c.description,
            c.service_notes, c.submitted_at, c.processed_at, c.status.value, c.is_visible,
        ))

    # ---------------- snapshot reads ----------------

    @contextmanager
    def _read_cursor(self) -> Generator[Any, None, None]:
        conn = self._connection_factory()
        conn.set_session(isolation_level="REPEATABLE READ", readonly=True)
        cursor = conn.cursor()
        try:
            yield cursor
        finally:
            cursor.close()
            conn.rollback()
            conn.close()

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._read_cursor() as cursor:
            return self._select_product(cursor, product_id)

    def read_product_snapshot(self, product_id: str) -> Optional[ProductSnapshot]:
        with self._read_cursor() as cursor:
            product = self._select_product(cursor, product_id)
            if product is None:
                return None
            return ProductSnapshot(
                product=product,
                ownership=self._select_ownership(cursor, product_id),
                claims=self._select_claims(cursor, product_id),
            )

    def get_user_products(self, principal_id: str) -> list[str]:
        with self._read_cursor() as cursor:
            cursor.execute(
                "SELECT product_id FROM user_products WHERE principal_id = %s ORDER BY product_id",
                (principal_id,),
            )
            return [row[0] for row in cursor.fetchall()]

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._read_cursor() as cursor:
            return self._select_principal(cursor, principal_id)

    def list_events(self) -> list[LedgerEvent]:
        with self._read_cursor() as cursor:
            cursor.execute(f"SELECT {_EVENT_COLUMNS} FROM ledger_events ORDER BY sequence_number")
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def list_events_for_entity(self, entity_id: str) -> list[LedgerEvent]:
        with self._read_cursor() as cursor:
            cursor.execute(
                f"SELECT {_EVENT_COLUMNS} FROM ledger_events "
                "WHERE entity_id = %s ORDER BY sequence_number",
                (entity_id,),
            )
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def get_head(self) -> ChainHead:
        with self._read_cursor() as cursor:
            cursor.execute("SELECT last_sequence, last_event_hash FROM ledger_head WHERE id = TRUE")
            row = cursor.fetchone()
            if row is None:
                return ChainHead(last_sequence=-1, last_event_hash=None)
            return ChainHead(last_sequence=row[0], last_event_hash=row[1])
