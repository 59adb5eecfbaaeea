"""Unit tests for plugins/registry.py - Backend registry."""

import pytest

from conftest import (
    FakeAddressResolver,
    FakeAutoscalerBinder,
    FakeMessagingAdmin,
    FakeWorkloadAdmin,
)
from plugins.registry import (
    AUTOSCALERS,
    MESSAGING,
    RESOLVERS,
    WORKLOADS,
    PluginRegistry,
    get_registry,
    reset_registry,
)


class ConfiguredMessagingAdmin(FakeMessagingAdmin):
    @classmethod
    def load_config_from_env(cls):
        return {"endpoint": "env", "timeout": 30}


class TestRegistration:
    @pytest.fixture
    def registry(self):
        return PluginRegistry()

    def test_register_each_kind(self, registry):
        registry.register_messaging_backend(FakeMessagingAdmin)
        registry.register_workload_backend(FakeWorkloadAdmin)
        registry.register_autoscaler_backend(FakeAutoscalerBinder)
        registry.register_resolver_backend(FakeAddressResolver)

        assert registry.list_plugins(MESSAGING) == ["fake_messaging"]
        assert registry.has_plugin(WORKLOADS, "fake_workloads")
        assert registry.has_plugin(AUTOSCALERS, "fake_autoscaler")
        assert registry.has_plugin(RESOLVERS, "fake_resolver")
        assert registry.get_plugin_info(MESSAGING, "fake_messaging") == {
            "name": "fake_messaging",
            "version": "0.1.0",
        }

    def test_wrong_kind_rejected(self, registry):
        with pytest.raises(ValueError) as exc_info:
            registry.register(MESSAGING, FakeWorkloadAdmin)
        assert "not a MessagingAdmin" in str(exc_info.value)

    def test_unknown_kind_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.register("queues", FakeMessagingAdmin)

    def test_env_config_captured(self, registry):
        registry.register(MESSAGING, ConfiguredMessagingAdmin)
        assert registry.get_plugin_config(MESSAGING, "fake_messaging") == {
            "endpoint": "env",
            "timeout": 30,
        }

    def test_missing_plugin_info(self, registry):
        assert registry.get_plugin_info(MESSAGING, "nope") is None
        assert registry.get_plugin_config(MESSAGING, "nope") == {}


@pytest.mark.asyncio
class TestInstantiation:
    @pytest.fixture
    def registry(self):
        registry = PluginRegistry()
        registry.register(MESSAGING, ConfiguredMessagingAdmin)
        return registry

    async def test_get_initializes_once(self, registry):
        first = await registry.get(MESSAGING, "fake_messaging", {"timeout": 5})
        second = await registry.get(MESSAGING, "fake_messaging")

        assert first is second
        assert first.config == {"endpoint": "env", "timeout": 5}

    async def test_get_unknown(self, registry):
        with pytest.raises(ValueError) as exc_info:
            await registry.get(MESSAGING, "kafka")
        assert "Available backends: fake_messaging" in str(exc_info.value)

    async def test_close_all(self, registry):
        closed = []

        plugin = await registry.get(MESSAGING, "fake_messaging")

        async def close():
            closed.append(plugin.name)
            raise RuntimeError("already closed")

        plugin.close = close

        await registry.close_all()

        assert closed == ["fake_messaging"]
        assert await registry.get(MESSAGING, "fake_messaging") is not plugin


class TestGlobalRegistry:
    def test_singleton_and_reset(self):
        reset_registry()
        registry = get_registry()
        assert get_registry() is registry

        reset_registry()
        assert get_registry() is not registry
        reset_registry()
