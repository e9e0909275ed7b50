# ABOUTME: Unit tests for the active configuration registry
# ABOUTME: Tests registration, replacement, lookup and per-watcher informer bookkeeping

from unittest.mock import MagicMock

import pytest

from resource_sync.models import GVR
from resource_sync.registry import ActiveConfigRegistry, WatcherState

PODS = GVR("", "v1", "pods")
DEPLOYMENTS = GVR("apps", "v1", "deployments")


def make_state(sync_config) -> WatcherState:
    return WatcherState(config=sync_config, queue=MagicMock(), buffer=MagicMock())


@pytest.mark.unit
class TestWatcherState:
    """Tests for informer bookkeeping of one watcher."""

    def test_add_informer_once(self, sync_config):
        """Test that a second informer for the same GVR is refused."""
        state = make_state(sync_config)
        first, second = MagicMock(), MagicMock()

        assert state.add_informer(PODS, first) is True
        assert state.add_informer(PODS, second) is False
        assert state.informers()[PODS] is first

    def test_remove_informer(self, sync_config):
        """Test removal returns the informer once."""
        state = make_state(sync_config)
        informer = MagicMock()
        state.add_informer(PODS, informer)

        assert state.remove_informer(PODS) is informer
        assert state.remove_informer(PODS) is None
        assert state.has_informer(PODS) is False

    def test_watched_gvrs_sorted(self, sync_config):
        """Test that watched GVRs are reported in sorted order."""
        state = make_state(sync_config)
        state.add_informer(DEPLOYMENTS, MagicMock())
        state.add_informer(PODS, MagicMock())

        assert state.watched_gvrs() == [PODS, DEPLOYMENTS]

    def test_informers_is_snapshot(self, sync_config):
        """Test that the informer map returned is a copy."""
        state = make_state(sync_config)
        snapshot = state.informers()
        snapshot[PODS] = MagicMock()

        assert state.has_informer(PODS) is False


@pytest.mark.unit
class TestActiveConfigRegistry:
    """Tests for the registry of running configurations."""

    def test_register_and_get(self, sync_config):
        """Test storing and reading a watcher."""
        registry = ActiveConfigRegistry()
        state = make_state(sync_config)

        assert registry.register(sync_config.key, state) is None
        assert registry.get(sync_config.key) is state
        assert sync_config.key in registry
        assert registry.count() == 1

    def test_register_returns_previous(self, sync_config):
        """Test that replacing a watcher hands back the old one."""
        registry = ActiveConfigRegistry()
        old, new = make_state(sync_config), make_state(sync_config)
        registry.register(sync_config.key, old)

        assert registry.register(sync_config.key, new) is old
        assert registry.get(sync_config.key) is new

    def test_pop(self, sync_config):
        """Test that pop removes the watcher."""
        registry = ActiveConfigRegistry()
        state = make_state(sync_config)
        registry.register(sync_config.key, state)

        assert registry.pop(sync_config.key) is state
        assert registry.pop(sync_config.key) is None
        assert registry.count() == 0

    def test_keys_sorted(self, sync_config):
        """Test that keys come back sorted."""
        registry = ActiveConfigRegistry()
        registry.register("b/two", make_state(sync_config))
        registry.register("a/one", make_state(sync_config))

        assert registry.keys() == ["a/one", "b/two"]

    def test_watched_gvrs(self, sync_config):
        """Test GVR lookup by configuration key."""
        registry = ActiveConfigRegistry()
        state = make_state(sync_config)
        state.add_informer(PODS, MagicMock())
        registry.register(sync_config.key, state)

        assert registry.watched_gvrs(sync_config.key) == [PODS]
        assert registry.watched_gvrs("missing/config") == []
