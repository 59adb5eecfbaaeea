"""
Backend plugins for the Pub/Sub source controller.

This package provides the capability interfaces the reconcilers call and
the registry that selects a concrete backend for each of them.
"""

from plugins.base import BackendPlugin, OwnerReference
from plugins.messaging.base import MessagingAdmin, MessagingClient, SubscriptionConfig
from plugins.registry import PluginRegistry, get_registry
from plugins.resolvers.base import AddressResolver, ReferenceNotFound, ReferenceNotReady
from plugins.workloads.base import (
    AutoscalerBinder,
    BindingSpec,
    Workload,
    WorkloadAdmin,
    WorkloadSpec,
)

__all__ = [
    "AddressResolver",
    "AutoscalerBinder",
    "BackendPlugin",
    "BindingSpec",
    "MessagingAdmin",
    "MessagingClient",
    "OwnerReference",
    "PluginRegistry",
    "ReferenceNotFound",
    "ReferenceNotReady",
    "SubscriptionConfig",
    "Workload",
    "WorkloadAdmin",
    "WorkloadSpec",
    "get_registry",
]
