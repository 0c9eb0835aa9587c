"""Fingerprints for stored objects.

Digests of every written variant are recorded in the job result so a later
audit can tell whether an object was replaced or corrupted in the store.
"""

import hashlib
from typing import Any, Dict


def compute_bytes_hash(data: bytes) -> str:
    """SHA-256 hex digest of an in-memory object."""
    return hashlib.sha256(data).hexdigest()


def describe_output(key: str, data: bytes) -> Dict[str, Any]:
    """Result entry for one written variant."""
    return {"key": key, "bytes": len(data), "sha256": compute_bytes_hash(data)}


def verify_output(data: bytes, expected: Dict[str, Any]) -> bool:
    """Whether data matches a result entry produced by describe_output."""
    return len(data) == expected.get("bytes") and compute_bytes_hash(data) == expected.get(
        "sha256"
    )
