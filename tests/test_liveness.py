"""
Unit tests for the provider liveness rule.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from depin_storage.core.liveness import (
    FRESHNESS_WINDOW,
    is_fresh,
    is_online,
    offline_reason,
)
from depin_storage.storage.models import ProviderRecord

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_provider(**overrides) -> ProviderRecord:
    fields = {
        "id": "p1",
        "name": "Provider 0xABCD",
        "wallet_address": "0x" + "ab" * 20,
        "available_storage": 100,
        "price_per_gb": Decimal("1.00"),
        "ipfs_node_id": "QmNode",
        "is_active": True,
        "created_at": NOW - timedelta(days=1),
        "updated_at": NOW - timedelta(seconds=10),
    }
    fields.update(overrides)
    return ProviderRecord(**fields)


class TestFreshness:
    """Test the heartbeat freshness window."""

    def test_window_is_thirty_seconds(self):
        assert FRESHNESS_WINDOW == timedelta(seconds=30)

    def test_recent_heartbeat_is_fresh(self):
        assert is_fresh(NOW - timedelta(seconds=29), NOW)

    def test_boundary_is_stale(self):
        """Exactly 30 seconds old is no longer fresh."""
        assert not is_fresh(NOW - timedelta(seconds=30), NOW)

    def test_old_heartbeat_is_stale(self):
        assert not is_fresh(NOW - timedelta(seconds=40), NOW)


class TestOnlinePredicate:
    """Test the combined online verdict and its reasons."""

    def test_healthy_provider_is_online(self):
        provider = make_provider()
        assert is_online(provider, NOW)
        assert offline_reason(provider, NOW) is None

    def test_stale_heartbeat_is_offline(self):
        """Active flag set but last heartbeat 40s ago."""
        provider = make_provider(updated_at=NOW - timedelta(seconds=40))
        assert not is_online(provider, NOW)
        assert offline_reason(provider, NOW) == "provider is offline (last heartbeat 40s ago)"

    def test_inactive_is_offline(self):
        provider = make_provider(is_active=False)
        assert offline_reason(provider, NOW) == "provider is offline (inactive)"

    def test_no_capacity_is_offline(self):
        provider = make_provider(available_storage=0)
        assert offline_reason(provider, NOW) == "provider has no capacity available"

    def test_missing_node_is_offline(self):
        provider = make_provider(ipfs_node_id=None)
        assert offline_reason(provider, NOW) == "provider has no content-network node configured"

    def test_empty_node_is_offline(self):
        assert not is_online(make_provider(ipfs_node_id=""), NOW)

    def test_inactive_reported_before_staleness(self):
        provider = make_provider(is_active=False, updated_at=NOW - timedelta(minutes=5))
        assert offline_reason(provider, NOW) == "provider is offline (inactive)"

    def test_verdict_depends_only_on_inputs(self):
        provider = make_provider(updated_at=NOW - timedelta(seconds=25))
        assert is_online(provider, NOW) == is_online(provider, NOW)
        assert not is_online(provider, NOW + timedelta(seconds=5))
