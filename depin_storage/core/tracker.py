"""
Provider-side liveness tracker.

Keeps the provider's own record fresh: probes the local content-network
daemon on a fixed cadence and publishes the active flag, the heartbeat
timestamp and the truthful remaining capacity.

States: STARTING -> ACTIVE <-> DEGRADED -> STOPPED

A single heartbeat never raises. Store or daemon failures mark the cycle
inactive and the loop reschedules.
"""

import logging
import threading
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from .errors import CapacityConflict, DaemonUnavailable, StoreError
from .liveness import is_fresh
from depin_storage.logging_config import log_event
from depin_storage.sdk.ipfs_client import IpfsDaemon
from depin_storage.storage.models import ProviderRecord, utc_now
from depin_storage.storage.repository import InventoryStore

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 15.0


class TrackerState(Enum):
    STARTING = "starting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPED = "stopped"


def default_provider_name(wallet_address: str) -> str:
    return f"Provider {wallet_address[:6]}"


class LivenessTracker:
    """Heartbeat loop for one provider record."""

    def __init__(
        self,
        store: InventoryStore,
        daemon: IpfsDaemon,
        wallet_address: str,
        storage_gb: int,
        price_per_gb: Decimal,
        name: Optional[str] = None,
        interval: float = HEARTBEAT_INTERVAL,
        clock: Callable[[], datetime] = utc_now
    ):
        """Initialize the tracker.

        Args:
            store: Shared inventory store
            daemon: Local content-network daemon
            wallet_address: Provider's payment address (record identity)
            storage_gb: Original capacity budget offered by this provider
            price_per_gb: Unit price used on first registration
            name: Display name used on first registration
            interval: Seconds between heartbeats
            clock: Source of the current UTC time
        """
        if storage_gb <= 0:
            raise ValueError("storage_gb must be > 0")
        self.store = store
        self.daemon = daemon
        self.wallet_address = wallet_address
        self.storage_gb = storage_gb
        self.price_per_gb = price_per_gb
        self.name = name or default_provider_name(wallet_address)
        self.interval = interval
        self._clock = clock
        self.state = TrackerState.STARTING
        self.provider_id: Optional[str] = None

    def start(self) -> ProviderRecord:
        """Verify the daemon, register or refresh the record, enter ACTIVE.

        Raises:
            DaemonUnavailable: If the daemon cannot be reached (fatal)
            StoreError: If the record cannot be registered
        """
        node_id = self.daemon.node_id()
        now = self._clock()

        record = self.store.get_provider_by_address(self.wallet_address)
        if record is None:
            record = self.store.register_provider(
                wallet_address=self.wallet_address,
                name=self.name,
                available_storage=self.storage_gb,
                price_per_gb=self.price_per_gb,
                ipfs_node_id=node_id,
                now=now
            )
            log_event(logger, "provider_registered", provider_id=record.id,
                      capacity_gb=self.storage_gb, node_id=node_id)
        else:
            record = self.store.update_liveness(
                record.id, is_active=True, last_seen=now, ipfs_node_id=node_id
            )

        self.provider_id = record.id
        self.state = TrackerState.ACTIVE
        logger.info("Provider %s online as %s", self.wallet_address, record.id)
        return record

    def remaining_capacity(self, now: datetime) -> int:
        """Original budget minus live allocations and purchases in flight."""
        used = self.store.sum_active_allocations(self.provider_id, now)
        held = self.store.sum_pending_holds(self.provider_id, now)
        return max(self.storage_gb - used - held, 0)

    def heartbeat(self) -> TrackerState:
        """Run one probe-and-publish cycle. Never raises."""
        if self.state in (TrackerState.STARTING, TrackerState.STOPPED):
            return self.state

        now = self._clock()
        try:
            probe_ok = self.daemon.probe()
        except DaemonUnavailable as e:
            logger.warning("Daemon probe failed: %s", e)
            probe_ok = False

        if not probe_ok:
            logger.warning("Content-network daemon has no peers; marking provider inactive")
            self._write_inactive()
            self.state = TrackerState.DEGRADED
            return self.state

        try:
            record = self.store.get_provider(self.provider_id)
            active = is_fresh(record.last_seen, now)
            self.store.update_liveness(self.provider_id, is_active=active, last_seen=now)
            self._refresh_capacity(record, now)
        except StoreError as e:
            logger.warning("Heartbeat failed, assuming inactive this cycle: %s", e)
            self._write_inactive()
            self.state = TrackerState.DEGRADED
            return self.state

        log_event(logger, "heartbeat", level=logging.DEBUG,
                  provider_id=self.provider_id, active=active)
        self.state = TrackerState.ACTIVE
        return self.state

    def _refresh_capacity(self, record: ProviderRecord, now: datetime) -> None:
        remaining = self.remaining_capacity(now)
        if remaining == record.available_storage:
            return
        try:
            self.store.conditional_update_capacity(
                self.provider_id,
                expected_current=record.available_storage,
                new_value=remaining
            )
            log_event(logger, "capacity_refreshed", provider_id=self.provider_id,
                      previous_gb=record.available_storage, remaining_gb=remaining)
        except CapacityConflict as e:
            # A purchase moved the value; the next cycle recomputes
            logger.info("Capacity refresh skipped: %s", e)

    def _write_inactive(self) -> None:
        if self.provider_id is None:
            return
        try:
            self.store.update_liveness(self.provider_id, is_active=False)
        except StoreError as e:
            logger.warning("Could not mark provider inactive: %s", e)

    def run(self, stop_event: threading.Event) -> None:
        """Start, then heartbeat every ``interval`` until ``stop_event`` is set.

        The stop write happens even if the loop is interrupted.
        """
        self.start()
        try:
            while not stop_event.wait(self.interval):
                self.heartbeat()
        finally:
            self.stop()

    def stop(self) -> None:
        """Write active=false once and enter STOPPED. Best effort."""
        if self.state == TrackerState.STOPPED:
            return
        self._write_inactive()
        self.state = TrackerState.STOPPED
        logger.info("Provider %s stopped", self.wallet_address)
