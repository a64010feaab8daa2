"""
Deterministic hashing for change detection.

Fingerprints decide whether a reconcile produces a new revision, so they
must be stable across processes, Python versions and dict insertion order.

Manifesto:
    - **Canonical:** mappings are hashed with sorted keys, so field order in
      a manifest never changes its fingerprint
    - **Deterministic:** same content, same hash, always
    - **Content-only:** callers strip volatile fields before hashing

Architecture:
    ::

        compute_hash("a", 1)                -> sha256("a|1")[:32]
        canonical_json({"b": 1, "a": [2]})  -> '{"a":[2],"b":1}'
        content_hash(obj)                   -> sha256(canonical_json(obj))

Examples:
    >>> content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})
    True
    >>> len(compute_hash("default", "web"))
    32

Tags:
    hashing, fingerprint, change-detection, idempotency, app-spine
"""

import hashlib
import json
from typing import Any


def compute_hash(*values: Any, length: int = 32) -> str:
    """
    Compute deterministic hash from values.

    Joins string representations with '|' and hashes with SHA-256.
    Order-dependent: ``compute_hash(a, b) != compute_hash(b, a)``.

    Args:
        *values: Values to hash (converted to strings)
        length: Hex digest length (default 32 = 128 bits)

    Returns:
        Hex string of specified length
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode()).hexdigest()[:length]


def canonical_json(value: Any) -> str:
    """Serialize to compact JSON with sorted keys.

    Raises:
        TypeError: If the value holds something JSON cannot encode.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(value: Any, length: int = 64) -> str:
    """SHA-256 over the canonical JSON form of *value*."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()[:length]
