"""
lockerforge/core/canonical.py

Policy fingerprints over RFC 8785 (JCS) canonical JSON.

Two hashes are taken over a Policy.to_dict() mapping:

    policy_fingerprint   rule content only. The descriptive "info" block
                         (name, description, last update) is left out, so
                         rebuilding the same rules later keeps the value.
    document_digest      the whole mapping, info included. Snapshots store
                         it to detect any edit after writing.

RFC 8785: https://www.rfc-editor.org/rfc/rfc8785
"""

import hashlib
from typing import Any, Dict

try:
    import jcs as _jcs
except ImportError as exc:
    raise ImportError(
        "Policy snapshots need the 'jcs' package (RFC 8785).\n"
        "Install with: pip install jcs\n"
        f"Original error: {exc}"
    ) from exc


DESCRIPTIVE_KEYS = frozenset({"info"})


def canonicalize(obj: Dict[str, Any]) -> bytes:
    """
    RFC 8785 bytes for a JSON-primitive mapping.

    Enum members must already be reduced to their .value.
    """
    return _jcs.canonicalize(obj)


def document_digest(obj: Dict[str, Any]) -> str:
    """Lowercase hex SHA-256 of the canonical bytes."""
    return hashlib.sha256(canonicalize(obj)).hexdigest()


def policy_fingerprint(policy_data: Dict[str, Any]) -> str:
    """SHA-256 over what a policy allows and denies, ignoring its descriptive info."""
    return document_digest(
        {key: value for key, value in policy_data.items() if key not in DESCRIPTIVE_KEYS}
    )
