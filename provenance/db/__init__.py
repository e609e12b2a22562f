"""
Database Layer for the Product Provenance Ledger

Provides:
- StateStore abstraction (InMemory for dev, Postgres for prod)
- PostgreSQL schema
- Connection configuration
"""

from .store import (
    StateStore,
    StoreTransaction,
    InMemoryStateStore,
    PostgresStateStore,
    PendingEvent,
    ProductSnapshot,
    ChainHead,
    StateStoreError,
    ConcurrencyError,
    LockTimeoutError,
    ChainIntegrityError,
    product_key,
    principal_key,
)
from .config import (
    DatabaseConfig,
    StateStoreDriver,
    build_state_store,
    get_database_url,
    get_store_driver,
)

__all__ = [
    "StateStore",
    "StoreTransaction",
    "InMemoryStateStore",
    "PostgresStateStore",
    "PendingEvent",
    "ProductSnapshot",
    "ChainHead",
    "StateStoreError",
    "ConcurrencyError",
    "LockTimeoutError",
    "ChainIntegrityError",
    "product_key",
    "principal_key",
    "DatabaseConfig",
    "StateStoreDriver",
    "build_state_store",
    "get_database_url",
    "get_store_driver",
]
