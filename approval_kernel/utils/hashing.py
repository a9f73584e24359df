"""
Canonical JSON and the two hashes built on it.

``hash_payload`` gives a published definition its ``schema_hash`` and an
audit event its ``payload_hash``.  ``hash_audit_event`` links an event to
its predecessor.  Both are recomputed from stored rows during chain
validation, so the encoding below must never change for existing data.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

GENESIS = "GENESIS"


def _encode(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        # 1.50 and 1.5 are the same amount
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (UUID, Enum)):
        return str(obj.value if isinstance(obj, Enum) else obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, tuple):
        return list(obj)
    raise TypeError(f"cannot hash a {type(obj).__name__}")


def canonicalize_json(data: Any) -> str:
    """Sorted keys, no whitespace, one fixed form per value type."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_payload(payload: dict | list) -> str:
    return _sha256(canonicalize_json(payload))


def hash_audit_event(
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Hash of one audit event.  Covers the previous event's hash, so editing
    or deleting any event invalidates every event after it.
    """
    return _sha256(
        "|".join((entity_type, str(entity_id), action, payload_hash, prev_hash or GENESIS))
    )
