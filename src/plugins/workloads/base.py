"""
Workload Plugin Base - Abstract interfaces for the data plane.

A workload admin manages the receive adapter workloads that pull from a
subscription and forward events to a sink. An autoscaler binder manages
the optional binding that drives elastic replica counts from backlog.
"""

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from plugins.base import BackendPlugin, OwnerReference


@dataclass
class WorkloadSpec:
    """Desired (or observed) configuration of a workload."""

    name: str
    namespace: str
    image: str
    env: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    replicas: Optional[int] = None
    secret_name: Optional[str] = None
    secret_key: Optional[str] = None
    owner: Optional[OwnerReference] = None

    def differs_from(self, live: "WorkloadSpec") -> bool:
        """
        Compare against a live workload.

        Replicas are only compared when pinned here; an unpinned count is
        owned by the autoscaler. Labels set on the live object by others are
        ignored.
        """
        if self.image != live.image or self.env != live.env:
            return True
        if any(live.labels.get(k) != v for k, v in self.labels.items()):
            return True
        if (self.secret_name, self.secret_key) != (live.secret_name, live.secret_key):
            return True
        return self.replicas is not None and self.replicas != live.replicas


@dataclass
class Workload:
    """A live workload and its readiness."""

    spec: WorkloadSpec
    available: bool = False
    message: str = ""


@dataclass
class BindingSpec:
    """Autoscaler binding that scales a workload on subscription backlog."""

    name: str
    namespace: str
    target: str
    subscription_id: str
    project_id: str
    min_scale: int
    max_scale: int
    queue_depth_target: int
    cooldown_period: int
    polling_interval: int
    labels: Dict[str, str] = field(default_factory=dict)
    owner: Optional[OwnerReference] = None


class WorkloadAdmin(BackendPlugin):
    """Backend plugin that manages receive adapter workloads."""

    @abstractmethod
    async def list_workloads(
        self, namespace: str, labels: Dict[str, str]
    ) -> List[Workload]:
        """List workloads in a namespace matching all the given labels."""
        pass

    @abstractmethod
    async def create_workload(self, spec: WorkloadSpec) -> Workload:
        pass

    @abstractmethod
    async def update_workload(self, spec: WorkloadSpec) -> Workload:
        """Replace the configuration of an existing workload."""
        pass

    @abstractmethod
    async def delete_workload(self, namespace: str, name: str) -> None:
        """Delete a workload. Already-absent workloads are not an error."""
        pass

    @abstractmethod
    async def get_diagnostics(
        self, namespace: str, labels: Dict[str, str], workload_name: str
    ) -> List[str]:
        """
        Collect recent diagnostic messages for a workload.

        Returns:
            Container termination messages of the workload's pods, followed
            by messages of events involving the workload or its pods.
        """
        pass


class AutoscalerBinder(BackendPlugin):
    """Backend plugin that manages autoscaler bindings."""

    @abstractmethod
    async def create_or_update_binding(self, spec: BindingSpec) -> None:
        pass
