"""
Data models for the inventory store.

Provider records are long-lived and mutated in place. Allocation records are
append-only: once written they are never modified.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


PROVIDERS_TABLE = "storage_providers"
ALLOCATIONS_TABLE = "storage_allocations"
HOLDS_TABLE = "capacity_holds"

# Fixed purchase term
ALLOCATION_TERM = timedelta(days=30)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProviderRecord:
    """A storage provider as persisted in the shared store.

    ``updated_at`` is the heartbeat timestamp written by the provider's own
    liveness tracker; buyers never touch it.
    """
    id: str
    name: str
    wallet_address: str
    available_storage: int
    price_per_gb: Decimal
    ipfs_node_id: Optional[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime

    def __post_init__(self):
        if self.available_storage < 0:
            raise ValueError("available_storage must be >= 0")
        if self.price_per_gb <= 0:
            raise ValueError("price_per_gb must be > 0")

    @property
    def last_seen(self) -> datetime:
        return self.updated_at


@dataclass(frozen=True)
class AllocationRecord:
    """One buyer's time-bounded reservation of capacity from one provider."""
    id: str
    user_address: str
    provider_id: str
    allocated_gb: int
    paid_amount: int  # token base units
    transaction_hash: str
    expires_at: datetime
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.allocated_gb <= 0:
            raise ValueError("allocated_gb must be > 0")

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class CapacityHold:
    """Capacity taken from a provider by a purchase that has not committed yet."""
    id: str
    provider_id: str
    buyer_address: str
    gb: int
    created_at: datetime


class ChangeKind(Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """Row-level change notification delivered to store subscribers."""
    table: str
    kind: ChangeKind
    record: Any
