"""
Policy snapshots.

A snapshot is the policy as canonical JSON plus two hashes, so a later
run can diff against exactly what was produced before:

    {
      "format":      "lockerforge-snapshot",
      "version":     2,
      "policy_hash": "<fingerprint of the rule content>",
      "digest":      "<sha256 of the whole policy mapping, info included>",
      "policy":      {...Policy.to_dict()...}
    }

Loading recomputes both and refuses a snapshot where either differs.
"""

import json
import os
from pathlib import Path

from lockerforge.core.canonical import canonicalize, document_digest
from lockerforge.core.exceptions import PolicyFormatError, SnapshotError
from lockerforge.core.models import Policy
from lockerforge.policy.applocker_xml import parse_policy


SNAPSHOT_FORMAT  = "lockerforge-snapshot"
SNAPSHOT_VERSION = 2


def snapshot_dict(policy: Policy) -> dict:
    policy_data = policy.to_dict()
    return {
        "format":      SNAPSHOT_FORMAT,
        "version":     SNAPSHOT_VERSION,
        "policy_hash": policy.policy_hash,
        "digest":      document_digest(policy_data),
        "policy":      policy_data,
    }


def save_snapshot(policy: Policy, path: Path) -> str:
    """Write a snapshot atomically. Returns the policy hash."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = snapshot_dict(policy)

    temp_path = path.with_suffix(path.suffix + '.tmp')
    try:
        with open(temp_path, 'wb') as f:
            f.write(canonicalize(data))
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        if temp_path.exists():
            temp_path.unlink()
        raise SnapshotError(f"Failed to write snapshot: {e}", {"path": str(path)})

    return data["policy_hash"]


def load_snapshot(path: Path) -> Policy:
    """Load and verify a snapshot written by save_snapshot()."""
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise SnapshotError(f"Snapshot not found: {path}")
    except json.JSONDecodeError as e:
        raise SnapshotError(f"Invalid JSON in snapshot: {e}", {"path": str(path)})

    if not isinstance(data, dict) or data.get("format") != SNAPSHOT_FORMAT:
        raise SnapshotError("Not a LockerForge snapshot", {"path": str(path)})
    if data.get("version") != SNAPSHOT_VERSION:
        raise SnapshotError(
            f"Unsupported snapshot version: {data.get('version')}",
            {"path": str(path)},
        )

    policy = Policy.from_dict(data.get("policy", {}))
    if (
        policy.policy_hash != data.get("policy_hash")
        or document_digest(policy.to_dict()) != data.get("digest")
    ):
        raise SnapshotError(
            "Snapshot hash mismatch: content was modified after it was written",
            {"path": str(path)},
        )
    return policy


def read_policy_file(path: Path) -> Policy:
    """Read either AppLocker XML (.xml) or a snapshot (anything else)."""
    path = Path(path)
    if path.suffix.lower() == ".xml":
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise PolicyFormatError(f"Policy file not found: {path}")
        # Bytes, so the parser honours the BOM and declared encoding (exports are often UTF-16).
        return parse_policy(data)
    return load_snapshot(path)
