"""
Provider listings and buyer summaries.

ProviderDirectory keeps a view of all providers current by subscribing to
provider changes; the online verdict comes from the shared liveness rule.
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .liveness import is_online
from depin_storage.storage.models import (
    PROVIDERS_TABLE,
    ChangeEvent,
    ProviderRecord,
    utc_now,
)
from depin_storage.storage.repository import InventoryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderListing:
    record: ProviderRecord
    online: bool


class ProviderDirectory:
    """Live provider list for rendering collaborators."""

    def __init__(self, store: InventoryStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock
        self._providers: Dict[str, ProviderRecord] = {}
        self._lock = threading.Lock()
        self._subscription = store.subscribe(PROVIDERS_TABLE, None, self._on_change)
        self.refresh()

    def refresh(self) -> None:
        """Reload every provider from the store."""
        providers = self.store.list_providers()
        with self._lock:
            self._providers = {p.id: p for p in providers}

    def _on_change(self, event: ChangeEvent) -> None:
        with self._lock:
            self._providers[event.record.id] = event.record

    def listings(self, now: Optional[datetime] = None) -> List[ProviderListing]:
        """All providers with their online verdict, online first."""
        now = now or self._clock()
        with self._lock:
            providers = list(self._providers.values())
        listings = [ProviderListing(record=p, online=is_online(p, now)) for p in providers]
        listings.sort(key=lambda item: (not item.online, item.record.name))
        return listings

    def online(self, now: Optional[datetime] = None) -> List[ProviderRecord]:
        return [item.record for item in self.listings(now) if item.online]

    def get(self, provider_id: str) -> Optional[ProviderRecord]:
        with self._lock:
            return self._providers.get(provider_id)

    def close(self) -> None:
        self._subscription.unsubscribe()


@dataclass(frozen=True)
class AllocationSummary:
    """Buyer dashboard figures."""
    total_gb: int
    active_allocations: int
    provider_count: int
    nearest_expiry: Optional[datetime]
    remaining_days: int


def summarize_allocations(
    store: InventoryStore,
    user_address: str,
    now: Optional[datetime] = None
) -> AllocationSummary:
    """Summarize a buyer's non-expired allocations.

    Args:
        store: Inventory store to read from
        user_address: Buyer wallet address
        now: Evaluation time (defaults to current UTC time)

    Returns:
        AllocationSummary; zeros when the buyer holds nothing
    """
    now = now or utc_now()
    allocations = store.list_allocations(user_address=user_address, active_at=now)
    if not allocations:
        return AllocationSummary(
            total_gb=0,
            active_allocations=0,
            provider_count=0,
            nearest_expiry=None,
            remaining_days=0
        )

    nearest = min(a.expires_at for a in allocations)
    remaining_days = math.ceil((nearest - now).total_seconds() / 86400)
    return AllocationSummary(
        total_gb=sum(a.allocated_gb for a in allocations),
        active_allocations=len(allocations),
        provider_count=len({a.provider_id for a in allocations}),
        nearest_expiry=nearest,
        remaining_days=remaining_days
    )
