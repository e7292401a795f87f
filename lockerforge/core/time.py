"""
lockerforge/core/time.py

Timestamp for a policy's last update.

Format: YYYY-MM-DDTHH:MM:SSZ (UTC, whole seconds, explicit Z).
"""

from datetime import datetime, timezone


def policy_timestamp() -> str:
    """Current UTC time in the last-update format."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
