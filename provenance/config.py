"""
Ledger Configuration

Environment Variables:
    PROVENANCE_ADMIN: Principal id of the ledger administrator (default "admin")
    PROVENANCE_HIDDEN_RECORD_POLICY: Who hidden history records are hidden from
        - "third_parties" (default): everyone except the admin and the current owner
        - "everyone_but_admin": the current owner also sees only visible records
    PROVENANCE_LOCK_TIMEOUT: Seconds to wait for a product/principal lock (default 2.0)
    PROVENANCE_MAX_RETRIES: Retries after a lock timeout or version conflict (default 3)
    PROVENANCE_RETRY_BACKOFF: Base backoff in seconds, multiplied by the attempt (default 0.05)
"""

import os
from dataclasses import dataclass
from enum import Enum


class HiddenRecordPolicy(str, Enum):
    """Who a record with is_visible=False is hidden from."""
    THIRD_PARTIES = "third_parties"
    EVERYONE_BUT_ADMIN = "everyone_but_admin"


@dataclass
class LedgerSettings:
    """Runtime settings for the ledger services."""
    admin_principal: str = "admin"
    hidden_record_policy: HiddenRecordPolicy = HiddenRecordPolicy.THIRD_PARTIES
    lock_timeout_seconds: float = 2.0
    max_retries: int = 3
    retry_backoff_seconds: float = 0.05

    def __post_init__(self):
        if not self.admin_principal:
            raise ValueError("admin_principal cannot be empty")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.lock_timeout_seconds < 0 or self.retry_backoff_seconds < 0:
            raise ValueError("timeouts cannot be negative")
        self.hidden_record_policy = HiddenRecordPolicy(self.hidden_record_policy)

    @classmethod
    def from_env(cls) -> "LedgerSettings":
        """Load settings from PROVENANCE_* environment variables."""
        policy = os.getenv("PROVENANCE_HIDDEN_RECORD_POLICY", "third_parties").lower()
        try:
            hidden_record_policy = HiddenRecordPolicy(policy)
        except ValueError:
            raise ValueError(
                f"Unknown PROVENANCE_HIDDEN_RECORD_POLICY: {policy}. "
                f"Valid values: third_parties, everyone_but_admin"
            )
        return cls(
            admin_principal=os.getenv("PROVENANCE_ADMIN", "admin"),
            hidden_record_policy=hidden_record_policy,
            lock_timeout_seconds=float(os.getenv("PROVENANCE_LOCK_TIMEOUT", "2.0")),
            max_retries=int(os.getenv("PROVENANCE_MAX_RETRIES", "3")),
            retry_backoff_seconds=float(os.getenv("PROVENANCE_RETRY_BACKOFF", "0.05")),
        )
