"""
Plugin Registry - Discovery and registration of backend plugins.

This module provides the central registry for all backends, handling
discovery, registration, and instantiation. Backends are grouped by the
capability they provide: messaging, workloads, autoscalers and resolvers.
"""

from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from plugins.base import BackendPlugin, logger
from plugins.messaging.base import MessagingAdmin
from plugins.resolvers.base import AddressResolver
from plugins.workloads.base import AutoscalerBinder, WorkloadAdmin

MESSAGING = "messaging"
WORKLOADS = "workloads"
AUTOSCALERS = "autoscalers"
RESOLVERS = "resolvers"

_KIND_BASES: Dict[str, Type[BackendPlugin]] = {
    MESSAGING: MessagingAdmin,
    WORKLOADS: WorkloadAdmin,
    AUTOSCALERS: AutoscalerBinder,
    RESOLVERS: AddressResolver,
}

ENTRY_POINT_PREFIX = "pubsub_source"


class PluginRegistry:
    """
    Central registry for all backend plugins.

    Handles discovery, registration, and instantiation of messaging,
    workload, autoscaler and resolver backends.
    """

    def __init__(self):
        # Registered plugin classes (not instantiated), keyed by kind then name
        self._plugins: Dict[str, Dict[str, Type[BackendPlugin]]] = {
            kind: {} for kind in _KIND_BASES
        }

        # Cached plugin metadata (name, version) to avoid repeated instantiation
        self._plugin_info: Dict[str, Dict[str, Dict[str, str]]] = {
            kind: {} for kind in _KIND_BASES
        }

        # Instantiated and initialized plugin instances
        self._instances: Dict[str, Dict[str, BackendPlugin]] = {
            kind: {} for kind in _KIND_BASES
        }

        # Plugin configurations loaded from environment
        self._plugin_configs: Dict[str, Dict[str, Dict[str, Any]]] = {
            kind: {} for kind in _KIND_BASES
        }

    # Registration methods

    def register(self, kind: str, plugin_class: Type[BackendPlugin]) -> None:
        """
        Register a backend plugin class.

        Args:
            kind: Capability kind (messaging, workloads, autoscalers, resolvers)
            plugin_class: The BackendPlugin subclass to register

        Raises:
            ValueError: If the kind is unknown or the class does not
                implement the capability of that kind
        """
        base = _KIND_BASES.get(kind)
        if base is None:
            raise ValueError(f"Unknown plugin kind: {kind}")
        if not issubclass(plugin_class, base):
            raise ValueError(
                f"{plugin_class.__name__} is not a {base.__name__} and cannot "
                f"be registered as a {kind} backend"
            )

        # Create temporary instance to get name/version (only once at registration)
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._plugins[kind]:
            logger.warning(f"Overwriting existing {kind} backend: {name}")

        self._plugins[kind][name] = plugin_class
        self._plugin_info[kind][name] = {"name": name, "version": version}
        self._plugin_configs[kind][name] = plugin_class.load_config_from_env()
        logger.info(f"Registered {kind} backend: {name} v{version}")

    def register_messaging_backend(self, plugin_class: Type[MessagingAdmin]) -> None:
        self.register(MESSAGING, plugin_class)

    def register_workload_backend(self, plugin_class: Type[WorkloadAdmin]) -> None:
        self.register(WORKLOADS, plugin_class)

    def register_autoscaler_backend(
        self, plugin_class: Type[AutoscalerBinder]
    ) -> None:
        self.register(AUTOSCALERS, plugin_class)

    def register_resolver_backend(self, plugin_class: Type[AddressResolver]) -> None:
        self.register(RESOLVERS, plugin_class)

    # Instantiation methods

    async def get(
        self, kind: str, name: str, config: Optional[Dict[str, Any]] = None
    ) -> BackendPlugin:
        """
        Get an initialized backend instance.

        Args:
            kind: Capability kind
            name: The backend name to retrieve
            config: Optional configuration merged over the environment config

        Returns:
            An initialized backend instance

        Raises:
            ValueError: If the backend name is not registered
        """
        plugins = self._plugins.get(kind, {})
        if name not in plugins:
            available = ", ".join(plugins.keys()) or "none"
            raise ValueError(
                f"Unknown {kind} backend: {name}. Available backends: {available}"
            )

        if name not in self._instances[kind]:
            plugin = plugins[name]()
            merged = {**self._plugin_configs[kind].get(name, {}), **(config or {})}
            await plugin.initialize(merged)
            self._instances[kind][name] = plugin
            logger.info(f"Initialized {kind} backend: {name}")

        return self._instances[kind][name]

    async def close_all(self) -> None:
        """Close every initialized backend instance."""
        for kind, instances in self._instances.items():
            for name, plugin in list(instances.items()):
                try:
                    await plugin.close()
                except Exception as e:
                    logger.warning(f"Error closing {kind} backend {name}: {e}")
            instances.clear()

    # Discovery methods

    def list_plugins(self, kind: str) -> List[str]:
        """List all registered backend names of a kind."""
        return list(self._plugins.get(kind, {}).keys())

    def has_plugin(self, kind: str, name: str) -> bool:
        """Check if a backend is registered."""
        return name in self._plugins.get(kind, {})

    def get_plugin_info(self, kind: str, name: str) -> Optional[Dict[str, str]]:
        """
        Get information about a registered backend.

        Returns:
            Dictionary with 'name' and 'version', or None if not found
        """
        return self._plugin_info.get(kind, {}).get(name)

    def get_plugin_config(self, kind: str, name: str) -> Dict[str, Any]:
        """
        Get the environment configuration of a backend.

        Returns:
            Dictionary of configuration values, or empty dict if not found
        """
        return self._plugin_configs.get(kind, {}).get(name, {})


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register all built-in backends and discover third-party backends
    via entry points.

    This function is called during application startup. Built-in backends
    whose client libraries are not installed are skipped with a warning.
    """
    registry = get_registry()

    try:
        from plugins.messaging.gcp_pubsub import GCPPubSubAdmin

        registry.register_messaging_backend(GCPPubSubAdmin)
    except ImportError as e:
        logger.warning(f"Could not load Google Cloud Pub/Sub backend: {e}")

    try:
        from plugins.workloads.kubernetes import (
            KedaAutoscalerBinder,
            KubernetesWorkloadAdmin,
        )

        registry.register_workload_backend(KubernetesWorkloadAdmin)
        registry.register_autoscaler_backend(KedaAutoscalerBinder)
    except ImportError as e:
        logger.warning(f"Could not load Kubernetes workload backends: {e}")

    try:
        from plugins.resolvers.kubernetes import KubernetesAddressResolver

        registry.register_resolver_backend(KubernetesAddressResolver)
    except ImportError as e:
        logger.warning(f"Could not load Kubernetes address resolver: {e}")

    # Discover and register third-party backends via entry points
    for kind in _KIND_BASES:
        for ep in entry_points(group=f"{ENTRY_POINT_PREFIX}.{kind}"):
            try:
                registry.register(kind, ep.load())
            except Exception as e:
                logger.warning(f"Could not load {kind} backend {ep.name}: {e}")
