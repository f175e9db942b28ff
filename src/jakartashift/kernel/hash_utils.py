"""Canonical serialization and content hashing.

Key rules:
- Object keys sorted recursively
- Compact separators, UTF-8 (no ASCII escaping)
- Lists keep their order; callers sort them before hashing

Plan fingerprints and snapshot identifiers are derived from these helpers,
so two processes always agree on the identity of the same content.
"""

import hashlib
import json
from typing import Any


def canonical_dumps(obj: Any) -> str:
    """Canonical JSON serialization for byte-stable output."""
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def content_hash(obj: Any) -> str:
    """sha256 hex digest of the canonical JSON form of obj."""
    return hashlib.sha256(canonical_dumps(obj).encode("utf-8")).hexdigest()


def bytes_hash(data: bytes) -> str:
    """sha256 hex digest of raw bytes (used for file snapshots)."""
    return hashlib.sha256(data).hexdigest()
