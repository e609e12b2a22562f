"""
Transaction Runner

Runs a mutation against the state store:
    lock keys -> run operation -> commit -> publish events

Lock timeouts and version conflicts are retried with linear backoff.
When the retries run out the caller gets ConcurrencyConflictError and
nothing has been written.

Events are published to subscribers only after a successful commit.
A failing subscriber is logged and never undoes the commit.
"""

import time
from datetime import datetime
from typing import Callable, Iterable, Optional, TypeVar

from pydantic import BaseModel

from ..config import LedgerSettings
from ..db.store import (
    ConcurrencyError,
    LockTimeoutError,
    PendingEvent,
    StateStore,
    StoreTransaction,
)
from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import EventType, LedgerEvent
from .errors import ConcurrencyConflictError

logger = get_logger(__name__)

T = TypeVar("T")

EventHandler = Callable[[LedgerEvent], None]


class TransactionRunner:
    """Executes operations in store transactions with bounded retry."""

    def __init__(
        self,
        store: StateStore,
        settings: Optional[LedgerSettings] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.settings = settings or LedgerSettings()
        self._metrics = metrics or get_metrics()
        self._sleep = sleep
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        """Register a handler called with each committed event, in sequence order."""
        self._handlers.append(handler)

    def run(self, keys: Iterable[str], operation: Callable[[StoreTransaction], T]) -> T:
        """
        Run operation inside a transaction holding locks on keys.

        The operation stages writes on the transaction and returns a result.
        It must not commit; the runner does. Any exception it raises discards
        the staged writes and propagates unchanged.
        """
        keys = list(keys)
        attempts = self.settings.max_retries + 1

        for attempt in range(1, attempts + 1):
            start = time.perf_counter()
            try:
                with self.store.begin(keys, timeout=self.settings.lock_timeout_seconds) as txn:
                    result = operation(txn)
                    events = txn.commit()
            except (LockTimeoutError, ConcurrencyError) as e:
                if attempt == attempts:
                    self._metrics.record_conflict(exhausted=True)
                    logger.warning(
                        "Giving up after concurrent modification",
                        keys=keys,
                        attempts=attempts,
                        error=str(e),
                    )
                    raise ConcurrencyConflictError(
                        f"Could not complete operation after {attempts} attempts: {e}"
                    ) from e
                self._metrics.record_conflict(exhausted=False)
                logger.debug("Retrying after conflict", keys=keys, attempt=attempt, error=str(e))
                self._sleep(self.settings.retry_backoff_seconds * attempt)
                continue

            self._metrics.record_commit((time.perf_counter() - start) * 1000, len(events))
            self._publish(events)
            return result

        # range() above always returns or raises
        raise AssertionError("unreachable")

    def _publish(self, events: list[LedgerEvent]) -> None:
        for event in events:
            for handler in self._handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Event subscriber failed",
                        event_type=event.event_type.value,
                        sequence_number=event.sequence_number,
                    )


def stage_event(
    txn: StoreTransaction,
    event_type: EventType,
    entity_id: str,
    payload: BaseModel,
    created_by: str,
    created_at: datetime,
    entity_type: str = "product",
) -> None:
    """Stage an audit event; it is sealed into the chain when txn commits."""
    txn.emit(PendingEvent(
        event_type=event_type,
        entity_id=entity_id,
        entity_type=entity_type,
        payload=payload.model_dump(mode="json"),
        created_by=created_by,
        created_at=created_at,
    ))
