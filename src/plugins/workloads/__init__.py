"""Data-plane workload and autoscaler backends."""

from plugins.workloads.base import (
    AutoscalerBinder,
    BindingSpec,
    Workload,
    WorkloadAdmin,
    WorkloadSpec,
)

__all__ = [
    "AutoscalerBinder",
    "BindingSpec",
    "Workload",
    "WorkloadAdmin",
    "WorkloadSpec",
]
