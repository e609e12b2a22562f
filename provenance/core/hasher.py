"""
Audit Log Hashing

Deterministic serialization and SHA-256 chaining for audit events.
Same envelope → same hash, so the audit log can be re-verified at any time.

CANONICAL SERIALIZATION RULES:
1. "__canon_v" version marker injected at top level
2. Dictionary keys sorted recursively
3. Nulls omitted; empty strings and lists preserved
4. Datetimes: timezone-aware only, UTC, microseconds, Z suffix
5. UUIDs lowercase, Enums by value
6. Floats banned (use Decimal or int)
7. Compact JSON, ASCII only
"""

import hashlib
import hmac
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """Canonical serialization and hashing of audit event envelopes."""

    SERIALIZATION_VERSION = 1

    @classmethod
    def _normalize(cls, value: Any, path: str) -> Any:
        if value is None or isinstance(value, (bool, str)):
            return value
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Floats are banned in canonical payloads (at {path}). "
                "Use Decimal or int."
            )
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, UUID):
            return str(value).lower()
        if isinstance(value, datetime):
            if value.tzinfo is None:
                raise CanonicalSerializationError(
                    f"Datetime at {path} is timezone-naive."
                )
            utc = value.astimezone(timezone.utc)
            return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond:06d}Z"
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (list, tuple)):
            return [cls._normalize(v, f"{path}[{i}]") for i, v in enumerate(value)]
        if isinstance(value, dict):
            out = {}
            for key in sorted(value):
                if not isinstance(key, str):
                    raise CanonicalSerializationError(
                        f"Dictionary key at {path} must be a string"
                    )
                normalized = cls._normalize(value[key], f"{path}.{key}" if path else key)
                if normalized is not None:
                    out[key] = normalized
            return out
        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}"
        )

    @classmethod
    def canonicalize(cls, data: dict[str, Any]) -> str:
        """Convert a dict to its canonical JSON string."""
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")
        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Canonicalization requires a dict, got {type(data).__name__}"
            )
        canonical = {"__canon_v": cls.SERIALIZATION_VERSION, **cls._normalize(data, "")}
        return json.dumps(
            canonical,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_event(cls, envelope: dict[str, Any], previous_hash: Optional[str] = None) -> str:
        """
        Hash an event envelope with chain linkage.

        - Genesis: SHA256(canonical_envelope)
        - Chained: SHA256(previous_hash + ":" + canonical_envelope)
        """
        canonical = cls.canonicalize(envelope)
        if previous_hash is None:
            chain_input = canonical
        else:
            previous_hash = previous_hash.lower()
            if len(previous_hash) != 64 or any(c not in "0123456789abcdef" for c in previous_hash):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash}"
                )
            chain_input = f"{previous_hash}:{canonical}"
        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def verify(cls, envelope: dict[str, Any], expected_hash: str, previous_hash: Optional[str] = None) -> bool:
        try:
            computed = cls.hash_event(envelope, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())


def event_envelope(
    event_type: Any,
    entity_id: str,
    entity_type: str,
    payload: dict[str, Any],
    created_by: str,
    created_at: datetime,
) -> dict[str, Any]:
    """The fields of an audit event covered by its hash."""
    return {
        "event_type": event_type,
        "entity_id": entity_id,
        "entity_type": entity_type,
        "payload": payload,
        "created_by": created_by,
        "created_at": created_at,
    }
