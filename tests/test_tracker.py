"""
Unit tests for the provider liveness tracker.

Uses a real temp store, a fake daemon and a hand-advanced clock.
"""

import os
import tempfile
import threading
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest

from depin_storage.core.errors import DaemonUnavailable, StoreError
from depin_storage.core.liveness import is_online
from depin_storage.core.tracker import LivenessTracker, TrackerState, default_provider_name
from depin_storage.sdk.ipfs_client import IpfsDaemon
from depin_storage.storage.models import ALLOCATION_TERM, AllocationRecord, CapacityHold
from depin_storage.storage.repository import InventoryStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
PROVIDER_ADDRESS = "0xABCDef0123456789abcdef0123456789ABCDEF01"


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeDaemon:
    def __init__(self, node_id: str = "QmNode", peers: int = 3, reachable: bool = True):
        self._node_id = node_id
        self.peers = peers
        self.reachable = reachable

    def node_id(self) -> str:
        if not self.reachable:
            raise DaemonUnavailable("connection refused")
        return self._node_id

    def probe(self) -> bool:
        if not self.reachable:
            raise DaemonUnavailable("connection refused")
        return self.peers > 0


class TestLivenessTracker:
    """Test the tracker state machine and the record it publishes."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = InventoryStore(os.path.join(self.temp_dir, "test.db"))
        self.store.initialize_schema()
        self.clock = FakeClock()
        self.daemon = FakeDaemon()
        self.tracker = LivenessTracker(
            store=self.store,
            daemon=self.daemon,
            wallet_address=PROVIDER_ADDRESS,
            storage_gb=100,
            price_per_gb=Decimal("1.00"),
            clock=self.clock
        )

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _record(self):
        return self.store.get_provider(self.tracker.provider_id)

    def _allocate(self, gb: int, created_at: datetime) -> None:
        self.store.insert_allocation(AllocationRecord(
            id=str(uuid.uuid4()),
            user_address="0x" + "cd" * 20,
            provider_id=self.tracker.provider_id,
            allocated_gb=gb,
            paid_amount=gb * 10**18,
            transaction_hash="0x" + uuid.uuid4().hex,
            expires_at=created_at + ALLOCATION_TERM,
            created_at=created_at
        ))

    def test_default_name(self):
        assert default_provider_name(PROVIDER_ADDRESS) == "Provider 0xABCD"
        assert self.tracker.name == "Provider 0xABCD"

    def test_start_registers_provider(self):
        record = self.tracker.start()

        assert self.tracker.state == TrackerState.ACTIVE
        assert record.wallet_address == PROVIDER_ADDRESS
        assert record.available_storage == 100
        assert record.price_per_gb == Decimal("1.00")
        assert record.ipfs_node_id == "QmNode"
        assert record.is_active is True
        assert record.last_seen == T0
        assert is_online(record, T0)

    def test_start_fails_fast_without_daemon(self):
        self.daemon.reachable = False
        with pytest.raises(DaemonUnavailable):
            self.tracker.start()
        assert self.tracker.state == TrackerState.STARTING
        assert self.store.list_providers() == []

    def test_restart_reuses_record(self):
        first = self.tracker.start()
        self.tracker.stop()

        self.clock.advance(300)
        tracker = LivenessTracker(
            store=self.store, daemon=FakeDaemon(node_id="QmNew"), wallet_address=PROVIDER_ADDRESS.lower(),
            storage_gb=100, price_per_gb=Decimal("1.00"), clock=self.clock
        )
        record = tracker.start()

        assert record.id == first.id
        assert record.is_active is True
        assert record.last_seen == self.clock.now
        assert record.ipfs_node_id == "QmNew"
        assert len(self.store.list_providers()) == 1

    def test_heartbeat_before_start_does_nothing(self):
        assert self.tracker.heartbeat() == TrackerState.STARTING
        assert self.store.list_providers() == []

    def test_healthy_heartbeat_refreshes_timestamp(self):
        self.tracker.start()
        self.clock.advance(15)

        assert self.tracker.heartbeat() == TrackerState.ACTIVE

        record = self._record()
        assert record.is_active is True
        assert record.last_seen == self.clock.now

    def test_no_peers_degrades(self):
        self.tracker.start()
        self.daemon.peers = 0
        self.clock.advance(15)

        assert self.tracker.heartbeat() == TrackerState.DEGRADED

        record = self._record()
        assert record.is_active is False
        assert record.last_seen == T0
        assert not is_online(record, self.clock.now)

    def test_unreachable_daemon_degrades_without_raising(self):
        self.tracker.start()
        self.daemon.reachable = False
        self.clock.advance(15)

        assert self.tracker.heartbeat() == TrackerState.DEGRADED
        assert self._record().is_active is False

    def test_null_peer_body_degrades_without_raising(self):
        def handler(request):
            if request.url.path == "/api/v0/id":
                return httpx.Response(200, json={"ID": "QmNode"})
            return httpx.Response(200, content=b"null")

        tracker = LivenessTracker(
            store=self.store,
            daemon=IpfsDaemon("http://ipfs.local:5001", client=httpx.Client(transport=httpx.MockTransport(handler))),
            wallet_address=PROVIDER_ADDRESS,
            storage_gb=100,
            price_per_gb=Decimal("1.00"),
            clock=self.clock
        )
        tracker.start()
        self.clock.advance(15)

        assert tracker.heartbeat() == TrackerState.DEGRADED
        assert self.store.get_provider(tracker.provider_id).is_active is False

    def test_recovery_after_long_outage(self):
        """The first healthy cycle after an outage reports a stale timestamp."""
        self.tracker.start()
        self.daemon.peers = 0
        self.clock.advance(15)
        self.tracker.heartbeat()
        self.clock.advance(15)
        self.tracker.heartbeat()

        self.daemon.peers = 2
        self.clock.advance(15)
        assert self.tracker.heartbeat() == TrackerState.ACTIVE
        record = self._record()
        assert record.is_active is False
        assert record.last_seen == self.clock.now

        self.clock.advance(15)
        self.tracker.heartbeat()
        record = self._record()
        assert record.is_active is True
        assert is_online(record, self.clock.now)

    def test_store_failure_degrades_without_raising(self):
        self.tracker.start()
        self.clock.advance(15)

        with patch.object(self.store, "get_provider", side_effect=StoreError("database is locked")):
            assert self.tracker.heartbeat() == TrackerState.DEGRADED

        assert self._record().is_active is False

    def test_capacity_refresh_subtracts_active_allocations(self):
        self.tracker.start()
        self._allocate(30, created_at=T0)
        self.clock.advance(15)

        self.tracker.heartbeat()

        assert self._record().available_storage == 70

    def test_capacity_returns_when_allocation_expires(self):
        self.tracker.start()
        self._allocate(30, created_at=T0)
        self.clock.advance(15)
        self.tracker.heartbeat()

        self.clock.now = T0 + ALLOCATION_TERM + timedelta(seconds=1)
        self.tracker.heartbeat()

        assert self._record().available_storage == 100

    def test_capacity_refresh_counts_in_flight_holds(self):
        self.tracker.start()
        hold = CapacityHold(
            id=str(uuid.uuid4()),
            provider_id=self.tracker.provider_id,
            buyer_address="0x" + "cd" * 20,
            gb=40,
            created_at=T0
        )
        self.store.conditional_update_capacity(self.tracker.provider_id, 100, 60, hold=hold)
        self.clock.advance(15)

        self.tracker.heartbeat()

        assert self._record().available_storage == 60
        assert self.tracker.remaining_capacity(self.clock.now) == 60

    def test_capacity_refresh_yields_to_concurrent_purchase(self):
        self.tracker.start()
        self._allocate(10, created_at=T0)
        self.clock.advance(15)
        provider_id = self.tracker.provider_id
        original = self.store.sum_active_allocations
        calls = []

        def purchase_between_read_and_write(pid, now):
            if not calls:
                hold = CapacityHold(
                    id=str(uuid.uuid4()),
                    provider_id=pid,
                    buyer_address="0x" + "cd" * 20,
                    gb=40,
                    created_at=now
                )
                self.store.conditional_update_capacity(pid, 100, 60, hold=hold)
            calls.append(pid)
            return original(pid, now)

        with patch.object(self.store, "sum_active_allocations", side_effect=purchase_between_read_and_write):
            assert self.tracker.heartbeat() == TrackerState.ACTIVE

        assert self._record().available_storage == 60
        assert len(self.store.list_holds(provider_id)) == 1

        self.clock.advance(15)
        self.tracker.heartbeat()

        assert self._record().available_storage == 50

    def test_capacity_never_negative(self):
        self.tracker.start()
        self._allocate(150, created_at=T0)
        assert self.tracker.remaining_capacity(T0) == 0

    def test_stop_writes_inactive_once(self):
        self.tracker.start()
        self.tracker.stop()

        assert self.tracker.state == TrackerState.STOPPED
        assert self._record().is_active is False

        with patch.object(self.store, "update_liveness") as update:
            self.tracker.stop()
            update.assert_not_called()

    def test_heartbeat_after_stop_does_nothing(self):
        self.tracker.start()
        self.tracker.stop()
        self.clock.advance(15)

        assert self.tracker.heartbeat() == TrackerState.STOPPED
        assert self._record().last_seen == T0

    def test_run_stops_when_event_set(self):
        stop_event = threading.Event()
        stop_event.set()

        self.tracker.run(stop_event)

        assert self.tracker.state == TrackerState.STOPPED
        assert self._record().is_active is False

    def test_run_heartbeats_until_stopped(self):
        tracker = LivenessTracker(
            store=self.store, daemon=self.daemon, wallet_address=PROVIDER_ADDRESS,
            storage_gb=100, price_per_gb=Decimal("1.00"), interval=0.01, clock=self.clock
        )
        stop_event = threading.Event()
        beats = []
        original = tracker.heartbeat

        def counting_heartbeat():
            beats.append(1)
            if len(beats) >= 3:
                stop_event.set()
            return original()

        tracker.heartbeat = counting_heartbeat
        tracker.run(stop_event)

        assert len(beats) == 3
        assert tracker.state == TrackerState.STOPPED

    def test_invalid_budget(self):
        with pytest.raises(ValueError):
            LivenessTracker(self.store, self.daemon, PROVIDER_ADDRESS, 0, Decimal("1"))
