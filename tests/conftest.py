"""Pytest configuration and fixtures."""

import copy
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from db import ConflictError
from events import EventBus, EventRecorder
from plugins.messaging.base import (
    MessagingAdmin,
    MessagingClient,
    Subscription,
    SubscriptionConfig,
    Topic,
)
from plugins.resolvers.base import AddressResolver, ReferenceNotFound, ReferenceNotReady
from plugins.workloads.base import (
    AutoscalerBinder,
    BindingSpec,
    Workload,
    WorkloadAdmin,
    WorkloadSpec,
)

PROJECT = "test-project"
TOPIC = "orders"
SINK_URL = "http://sink.default.svc.cluster.local"
IMAGE = "gcr.io/test/receive-adapter:latest"


class FakeStore:
    """In-memory resource store with the same optimistic-write rules as the database."""

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.failures: Dict[str, int] = {}
        self.scheduled: Dict[str, float] = {}
        self.history: List[Dict[str, Any]] = []
        self.status_writes = 0
        # Number of upcoming status writes that lose to a concurrent writer
        self.status_conflicts = 0

    def put(
        self,
        namespace: str,
        name: str,
        spec: Dict[str, Any],
        annotations: Optional[Dict[str, str]] = None,
        **fields,
    ) -> Dict[str, Any]:
        record = {
            "id": len(self.records) + 1,
            "namespace": namespace,
            "name": name,
            "uid": str(uuid.uuid4()),
            "generation": 1,
            "resource_version": 1,
            "spec": spec,
            "annotations": annotations or {},
            "status": {},
            "finalizers": [],
            "deletion_timestamp": None,
            "failure_count": 0,
            "last_reconcile_time": None,
        }
        record.update(fields)
        self.records[f"{namespace}/{name}"] = record
        return record

    def get(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self.records.get(f"{namespace}/{name}")

    def mark_deleting(self, namespace: str, name: str) -> None:
        record = self.records[f"{namespace}/{name}"]
        record["deletion_timestamp"] = datetime.now(timezone.utc)
        record["resource_version"] += 1

    def _check(self, namespace: str, name: str, resource_version: int) -> Dict[str, Any]:
        record = self.records.get(f"{namespace}/{name}")
        if record is None or record["resource_version"] != resource_version:
            raise ConflictError(f"{namespace}/{name} changed")
        return record

    async def get_source(self, namespace: str, name: str):
        record = self.records.get(f"{namespace}/{name}")
        return copy.deepcopy(record) if record else None

    async def update_status(self, namespace, name, status, resource_version) -> int:
        if self.status_conflicts:
            self.status_conflicts -= 1
            self.records[f"{namespace}/{name}"]["resource_version"] += 1
        record = self._check(namespace, name, resource_version)
        record["status"] = copy.deepcopy(status)
        record["resource_version"] += 1
        self.status_writes += 1
        return record["resource_version"]

    async def add_finalizer(self, namespace, name, finalizer, resource_version) -> int:
        record = self._check(namespace, name, resource_version)
        if finalizer not in record["finalizers"]:
            record["finalizers"].append(finalizer)
        record["resource_version"] += 1
        return record["resource_version"]

    async def remove_finalizer(self, namespace, name, finalizer, resource_version) -> bool:
        record = self._check(namespace, name, resource_version)
        record["finalizers"] = [f for f in record["finalizers"] if f != finalizer]
        record["resource_version"] += 1
        if record["deletion_timestamp"] is not None and not record["finalizers"]:
            del self.records[f"{namespace}/{name}"]
            return True
        return False

    async def get_keys_needing_reconciliation(self, limit: int = 10) -> List[str]:
        return list(self.records)[:limit]

    async def record_failure(self, namespace, name) -> int:
        key = f"{namespace}/{name}"
        if key not in self.records:
            return 0
        self.failures[key] = self.failures.get(key, 0) + 1
        return self.failures[key]

    async def schedule_reconcile(self, namespace, name, delay_seconds, reset_failures=False):
        key = f"{namespace}/{name}"
        self.scheduled[key] = delay_seconds
        if reset_failures:
            self.failures[key] = 0

    async def mark_for_reconciliation(self, namespace, name) -> bool:
        return f"{namespace}/{name}" in self.records

    async def record_reconciliation(self, namespace, name, **kwargs) -> None:
        self.history.append({"key": f"{namespace}/{name}", **kwargs})


class FakeMessagingClient(MessagingClient):
    def __init__(self, admin: "FakeMessagingAdmin"):
        self.admin = admin
        self.closed = False

    async def get_topic(self, topic_id: str) -> Optional[Topic]:
        self.admin.calls.append(("get_topic", topic_id))
        if topic_id in self.admin.topics:
            return Topic(topic_id, self.admin.project_id)
        return None

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        self.admin.calls.append(("get_subscription", subscription_id))
        return self.admin.subscriptions.get(subscription_id)

    async def create_subscription(self, subscription_id, topic_id, config):
        self.admin.calls.append(("create_subscription", subscription_id))
        if self.admin.create_error:
            raise self.admin.create_error
        sub = Subscription(subscription_id, topic_id, config)
        self.admin.subscriptions[subscription_id] = sub
        return sub

    async def update_subscription(self, subscription_id, config, fields):
        self.admin.calls.append(("update_subscription", subscription_id, tuple(fields)))
        sub = self.admin.subscriptions[subscription_id]
        sub = Subscription(subscription_id, sub.topic, config)
        self.admin.subscriptions[subscription_id] = sub
        return sub

    async def delete_subscription(self, subscription_id: str) -> None:
        self.admin.calls.append(("delete_subscription", subscription_id))
        if self.admin.delete_error:
            raise self.admin.delete_error
        self.admin.subscriptions.pop(subscription_id, None)

    async def close(self) -> None:
        self.closed = True


class FakeMessagingAdmin(MessagingAdmin):
    def __init__(self):
        self.project_id = ""
        self.topics = {TOPIC}
        self.subscriptions: Dict[str, Subscription] = {}
        self.calls: List[tuple] = []
        self.clients: List[FakeMessagingClient] = []
        self.client_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None

    @property
    def name(self) -> str:
        return "fake_messaging"

    @property
    def version(self) -> str:
        return "0.1.0"

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.config = config

    async def create_client(self, project_id: str) -> MessagingClient:
        if self.client_error:
            raise self.client_error
        self.project_id = project_id
        client = FakeMessagingClient(self)
        self.clients.append(client)
        return client

    def mutating_calls(self) -> List[tuple]:
        return [c for c in self.calls if not c[0].startswith("get_")]


class FakeWorkloadAdmin(WorkloadAdmin):
    def __init__(self):
        self.workloads: Dict[str, Workload] = {}
        self.calls: List[tuple] = []
        self.available = True
        self.diagnostics: List[str] = []
        self.list_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None

    @property
    def name(self) -> str:
        return "fake_workloads"

    @property
    def version(self) -> str:
        return "0.1.0"

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.config = config

    async def list_workloads(self, namespace, labels) -> List[Workload]:
        if self.list_error:
            raise self.list_error
        return [
            w
            for w in self.workloads.values()
            if w.spec.namespace == namespace
            and all(w.spec.labels.get(k) == v for k, v in labels.items())
        ]

    def _store(self, spec: WorkloadSpec) -> Workload:
        workload = Workload(
            copy.deepcopy(spec),
            available=self.available,
            message="" if self.available else "Deployment does not have minimum availability.",
        )
        self.workloads[spec.name] = workload
        return workload

    async def create_workload(self, spec: WorkloadSpec) -> Workload:
        self.calls.append(("create", spec.name))
        if self.create_error:
            raise self.create_error
        return self._store(spec)

    async def update_workload(self, spec: WorkloadSpec) -> Workload:
        self.calls.append(("update", spec.name))
        if self.update_error:
            raise self.update_error
        return self._store(spec)

    async def delete_workload(self, namespace, name) -> None:
        self.calls.append(("delete", name))
        if self.delete_error:
            raise self.delete_error
        self.workloads.pop(name, None)

    async def get_diagnostics(self, namespace, labels, workload_name) -> List[str]:
        return list(self.diagnostics)


class FakeAutoscalerBinder(AutoscalerBinder):
    def __init__(self):
        self.bindings: Dict[str, BindingSpec] = {}
        self.error: Optional[Exception] = None

    @property
    def name(self) -> str:
        return "fake_autoscaler"

    @property
    def version(self) -> str:
        return "0.1.0"

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.config = config

    async def create_or_update_binding(self, spec: BindingSpec) -> None:
        if self.error:
            raise self.error
        self.bindings[spec.name] = spec


class FakeAddressResolver(AddressResolver):
    """
    Resolves refs from a name -> address map.

    None marks a ref without an address; an exception value is raised as is.
    """

    def __init__(self, addresses: Optional[Dict[str, Optional[str]]] = None):
        self.addresses = addresses if addresses is not None else {"sink": SINK_URL}

    @property
    def name(self) -> str:
        return "fake_resolver"

    @property
    def version(self) -> str:
        return "0.1.0"

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.config = config

    async def resolve(self, ref, namespace: str) -> str:
        if ref.name not in self.addresses:
            raise ReferenceNotFound(f'{ref.kind} "{namespace}/{ref.name}" not found')
        address = self.addresses[ref.name]
        if isinstance(address, Exception):
            raise address
        if address is None:
            raise ReferenceNotReady(f'{ref.kind} "{namespace}/{ref.name}" has no address')
        return address


def source_spec(**overrides) -> Dict[str, Any]:
    spec = {
        "topic": TOPIC,
        "project": PROJECT,
        "sink": {"ref": {"apiVersion": "v1", "kind": "Service", "name": "sink"}},
    }
    spec.update(overrides)
    return spec


def subscription_config(**overrides) -> SubscriptionConfig:
    values = {
        "ack_deadline": timedelta(seconds=30),
        "retention_duration": timedelta(days=7),
        "retain_acked_messages": False,
    }
    values.update(overrides)
    return SubscriptionConfig(**values)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def messaging_admin():
    return FakeMessagingAdmin()


@pytest.fixture
def workload_admin():
    return FakeWorkloadAdmin()


@pytest.fixture
def binder():
    return FakeAutoscalerBinder()


@pytest.fixture
def address_resolver():
    return FakeAddressResolver()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def recorder(event_bus):
    return EventRecorder(event_bus)
