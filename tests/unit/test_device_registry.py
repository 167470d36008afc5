"""
Unit Tests for Device Registry resolution

Tests for:
- Explicit / default / most-recent tiers
- Fallthrough when the explicit device is inactive or unknown
- NotFoundError when nothing is available
- Reconciliation and deactivation
"""

import pytest
from datetime import datetime, timedelta

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from core.cast.errors import NotFoundError, ValidationError
from core.cast.registry import DeviceRegistry
from core.cast.store import CastStore
from core.cast.types import DiscoveredDevice, DiscoverySource, ResolutionTier

NOW = datetime(2024, 1, 1, 12, 0)


@pytest.fixture
def store():
    s = CastStore(":memory:")
    s.init_schema()
    yield s
    s.close()


@pytest.fixture
def registry(store):
    return DeviceRegistry(store)


class TestResolveTarget:
    """Tests for the three resolution tiers."""

    def test_explicit_active(self, registry, store):
        """An active explicit device wins over the default."""
        store.create_device("Default", "10.0.0.1", is_default=True)
        chosen = store.create_device("Kitchen", "10.0.0.2")
        device, tier = registry.resolve_target_with_tier(chosen.id)
        assert device.id == chosen.id
        assert tier == ResolutionTier.EXPLICIT

    def test_explicit_inactive_falls_to_default(self, registry, store):
        """An inactive explicit device falls through to the default."""
        default = store.create_device("Default", "10.0.0.1", is_default=True)
        inactive = store.create_device("Gone", "10.0.0.2")
        registry.deactivate(inactive.id)
        device, tier = registry.resolve_target_with_tier(inactive.id)
        assert device.id == default.id
        assert tier == ResolutionTier.DEFAULT

    def test_unknown_explicit_falls_through(self, registry, store):
        """An unknown explicit id falls through."""
        default = store.create_device("Default", "10.0.0.1", is_default=True)
        assert registry.resolve_target(999).id == default.id

    def test_most_recent_when_no_default(self, registry, store):
        """Without a default the most recently seen active device wins."""
        store.create_device("Old", "10.0.0.1", last_seen=NOW - timedelta(days=1))
        recent = store.create_device("Recent", "10.0.0.2", last_seen=NOW)
        device, tier = registry.resolve_target_with_tier(None)
        assert device.id == recent.id
        assert tier == ResolutionTier.MOST_RECENT

    def test_inactive_default_skipped(self, registry, store):
        """An inactive default does not count."""
        default = store.create_device("Default", "10.0.0.1", is_default=True, last_seen=NOW)
        other = store.create_device("Other", "10.0.0.2", last_seen=NOW - timedelta(hours=1))
        store.update_device(default.id, {'is_active': False})
        device, tier = registry.resolve_target_with_tier(None)
        assert device.id == other.id
        assert tier == ResolutionTier.MOST_RECENT

    def test_nothing_available(self, registry, store):
        """No active devices raises NotFoundError."""
        gone = store.create_device("Gone", "10.0.0.1")
        registry.deactivate(gone.id)
        with pytest.raises(NotFoundError, match="No available Cast device found"):
            registry.resolve_target(gone.id)

    def test_empty_registry(self, registry):
        """An empty registry raises NotFoundError."""
        with pytest.raises(NotFoundError):
            registry.resolve_target()


class TestRegistryMaintenance:
    """Tests for reconcile, update and deactivate."""

    def test_reconcile_same_address_once(self, registry):
        """Reconciling the same address twice yields one row."""
        found = DiscoveredDevice(name="TV", address="10.0.0.5", port=8009, source=DiscoverySource.MDNS)
        first, created = registry.reconcile(found)
        second, created_again = registry.reconcile(found)
        assert created is True and created_again is False
        assert first.id == second.id
        assert len(registry.list_devices()) == 1

    def test_update_rejects_empty_name(self, registry, store):
        """Names cannot be blanked."""
        device = store.create_device("TV", "10.0.0.5")
        with pytest.raises(ValidationError):
            registry.update_device(device.id, {'name': ''})

    def test_deactivate_clears_default(self, registry, store):
        """Deactivated devices lose the default flag."""
        device = store.create_device("TV", "10.0.0.5", is_default=True)
        updated = registry.deactivate(device.id)
        assert updated.is_active is False
        assert updated.is_default is False

    def test_list_active_only(self, registry, store):
        """active_only hides deactivated devices."""
        a = store.create_device("A", "10.0.0.1")
        store.create_device("B", "10.0.0.2")
        registry.deactivate(a.id)
        assert [d.name for d in registry.list_devices(active_only=True)] == ["B"]
        assert len(registry.list_devices()) == 2
