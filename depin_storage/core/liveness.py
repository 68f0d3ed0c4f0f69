"""
Provider liveness evaluation.

The single rule deciding whether a provider is usable. Provider self-checks,
buyer pre-checks and provider listings all call is_online; nothing else
re-derives the threshold.
"""

from datetime import datetime, timedelta
from typing import Optional

from depin_storage.storage.models import ProviderRecord

FRESHNESS_WINDOW = timedelta(seconds=30)


def is_fresh(last_seen: datetime, now: datetime) -> bool:
    """True when a heartbeat timestamp is inside the freshness window."""
    return (now - last_seen) < FRESHNESS_WINDOW


def offline_reason(record: ProviderRecord, now: datetime) -> Optional[str]:
    """Explain why a provider is not online, or None if it is.

    Checks run in a fixed order so the same record always yields the same
    reason.
    """
    if not record.is_active:
        return "provider is offline (inactive)"
    if not is_fresh(record.last_seen, now):
        age = int((now - record.last_seen).total_seconds())
        return f"provider is offline (last heartbeat {age}s ago)"
    if record.available_storage <= 0:
        return "provider has no capacity available"
    if not record.ipfs_node_id:
        return "provider has no content-network node configured"
    return None


def is_online(record: ProviderRecord, now: datetime) -> bool:
    """Pure liveness predicate: active, fresh, has capacity, has a node."""
    return offline_reason(record, now) is None
