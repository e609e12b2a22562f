"""Time source for the ledger. Services accept any zero-argument callable returning an aware datetime."""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
