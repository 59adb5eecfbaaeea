"""
Kubernetes data-plane backend.

Receive adapters run as apps/v1 Deployments. Elastic scaling is delegated
to KEDA through a ScaledObject that scales the Deployment on the backlog of
the Pub/Sub subscription.
"""

import logging
from typing import Any, Dict, List, Optional

from kubernetes_asyncio import client
from kubernetes_asyncio.client.api_client import ApiClient
from kubernetes_asyncio.client.rest import ApiException

from plugins.kube import label_selector, load_kube_config_from_env, new_api_client
from plugins.workloads.base import (
    AutoscalerBinder,
    BindingSpec,
    Workload,
    WorkloadAdmin,
    WorkloadSpec,
)

logger = logging.getLogger(__name__)

ADAPTER_CONTAINER = "receive-adapter"
CREDENTIALS_VOLUME = "google-cloud-key"
CREDENTIALS_MOUNT_PATH = "/var/secrets/google"

KEDA_GROUP = "keda.sh"
KEDA_VERSION = "v1alpha1"
KEDA_PLURAL = "scaledobjects"


def deployment_body(spec: WorkloadSpec) -> Dict[str, Any]:
    """Render a workload spec as a Deployment manifest."""
    env = [{"name": k, "value": v} for k, v in sorted(spec.env.items())]
    container: Dict[str, Any] = {"name": ADAPTER_CONTAINER, "image": spec.image}
    pod_spec: Dict[str, Any] = {"containers": [container]}

    if spec.secret_name:
        env.append(
            {
                "name": "GOOGLE_APPLICATION_CREDENTIALS",
                "value": f"{CREDENTIALS_MOUNT_PATH}/{spec.secret_key}",
            }
        )
        container["volumeMounts"] = [
            {"name": CREDENTIALS_VOLUME, "mountPath": CREDENTIALS_MOUNT_PATH}
        ]
        pod_spec["volumes"] = [
            {"name": CREDENTIALS_VOLUME, "secret": {"secretName": spec.secret_name}}
        ]
    container["env"] = env

    metadata: Dict[str, Any] = {
        "name": spec.name,
        "namespace": spec.namespace,
        "labels": dict(spec.labels),
    }
    if spec.owner:
        metadata["ownerReferences"] = [spec.owner.to_dict()]

    body: Dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": metadata,
        "spec": {
            "selector": {"matchLabels": dict(spec.labels)},
            "template": {
                "metadata": {"labels": dict(spec.labels)},
                "spec": pod_spec,
            },
        },
    }
    if spec.replicas is not None:
        body["spec"]["replicas"] = spec.replicas
    return body


def workload_from_deployment(dep: client.V1Deployment) -> Workload:
    """Read a live Deployment back into a workload."""
    pod_spec = dep.spec.template.spec
    container = next(
        (c for c in pod_spec.containers if c.name == ADAPTER_CONTAINER),
        pod_spec.containers[0],
    )
    env: Dict[str, str] = {}
    secret_key: Optional[str] = None
    for var in container.env or []:
        if var.name == "GOOGLE_APPLICATION_CREDENTIALS":
            secret_key = (var.value or "").rsplit("/", 1)[-1]
        elif var.value_from is None:
            env[var.name] = var.value or ""

    secret_name: Optional[str] = None
    for volume in pod_spec.volumes or []:
        if volume.name == CREDENTIALS_VOLUME and volume.secret:
            secret_name = volume.secret.secret_name

    available = False
    message = "Deployment has no Available condition"
    for cond in (dep.status.conditions if dep.status else None) or []:
        if cond.type == "Available":
            available = cond.status == "True"
            message = cond.message or cond.reason or ""

    return Workload(
        spec=WorkloadSpec(
            name=dep.metadata.name,
            namespace=dep.metadata.namespace,
            image=container.image,
            env=env,
            labels=dict(dep.metadata.labels or {}),
            replicas=dep.spec.replicas,
            secret_name=secret_name,
            secret_key=secret_key,
        ),
        available=available,
        message=message,
    )


def replacement_body(spec: WorkloadSpec, live: client.V1Deployment) -> Dict[str, Any]:
    """
    Render a full replacement of a live Deployment.

    Env vars and volumes missing from ``spec`` are dropped, which a merge
    patch would keep. Labels and annotations set by others survive, and an
    unpinned replica count keeps its live value.
    """
    body = deployment_body(spec)
    metadata = body["metadata"]
    metadata["resourceVersion"] = live.metadata.resource_version
    metadata["labels"] = {**(live.metadata.labels or {}), **metadata["labels"]}
    if live.metadata.annotations:
        metadata["annotations"] = dict(live.metadata.annotations)
    if spec.replicas is None and live.spec.replicas is not None:
        body["spec"]["replicas"] = live.spec.replicas
    return body


def scaled_object_body(spec: BindingSpec) -> Dict[str, Any]:
    """Render a binding spec as a KEDA ScaledObject manifest."""
    metadata: Dict[str, Any] = {
        "name": spec.name,
        "namespace": spec.namespace,
        "labels": dict(spec.labels),
    }
    if spec.owner:
        metadata["ownerReferences"] = [spec.owner.to_dict()]
    return {
        "apiVersion": f"{KEDA_GROUP}/{KEDA_VERSION}",
        "kind": "ScaledObject",
        "metadata": metadata,
        "spec": {
            "scaleTargetRef": {"name": spec.target},
            "minReplicaCount": spec.min_scale,
            "maxReplicaCount": spec.max_scale,
            "cooldownPeriod": spec.cooldown_period,
            "pollingInterval": spec.polling_interval,
            "triggers": [
                {
                    "type": "gcp-pubsub",
                    "metadata": {
                        "subscriptionName": (
                            f"projects/{spec.project_id}/subscriptions/"
                            f"{spec.subscription_id}"
                        ),
                        "mode": "SubscriptionSize",
                        "value": str(spec.queue_depth_target),
                    },
                }
            ],
        },
    }


class _KubernetesBackend:
    """Lazily connected API client shared by the Kubernetes backends."""

    def __init__(self):
        self._config: Dict[str, Any] = {}
        self._api_client: Optional[ApiClient] = None

    async def initialize(self, config: Dict[str, Any]) -> None:
        self._config = config
        self._api_client = await new_api_client(config)
        logger.info(f"Initialized {self.name} backend")

    async def close(self) -> None:
        if self._api_client:
            await self._api_client.close()
            self._api_client = None

    def _ensure_connected(self) -> ApiClient:
        if not self._api_client:
            raise RuntimeError(f"{self.name} backend not initialized")
        return self._api_client

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        return load_kube_config_from_env()


class KubernetesWorkloadAdmin(_KubernetesBackend, WorkloadAdmin):
    """Workload admin backed by Kubernetes Deployments."""

    @property
    def name(self) -> str:
        return "kubernetes"

    @property
    def version(self) -> str:
        return "1.0.0"

    async def list_workloads(
        self, namespace: str, labels: Dict[str, str]
    ) -> List[Workload]:
        apps = client.AppsV1Api(self._ensure_connected())
        deployments = await apps.list_namespaced_deployment(
            namespace, label_selector=label_selector(labels)
        )
        return [workload_from_deployment(d) for d in deployments.items]

    async def create_workload(self, spec: WorkloadSpec) -> Workload:
        apps = client.AppsV1Api(self._ensure_connected())
        logger.info(f"Creating deployment {spec.namespace}/{spec.name}")
        dep = await apps.create_namespaced_deployment(
            spec.namespace, deployment_body(spec)
        )
        return workload_from_deployment(dep)

    async def update_workload(self, spec: WorkloadSpec) -> Workload:
        apps = client.AppsV1Api(self._ensure_connected())
        live = await apps.read_namespaced_deployment(spec.name, spec.namespace)
        logger.info(f"Updating deployment {spec.namespace}/{spec.name}")
        dep = await apps.replace_namespaced_deployment(
            spec.name, spec.namespace, replacement_body(spec, live)
        )
        return workload_from_deployment(dep)

    async def delete_workload(self, namespace: str, name: str) -> None:
        apps = client.AppsV1Api(self._ensure_connected())
        logger.info(f"Deleting deployment {namespace}/{name}")
        try:
            await apps.delete_namespaced_deployment(name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise

    async def get_diagnostics(
        self, namespace: str, labels: Dict[str, str], workload_name: str
    ) -> List[str]:
        core = client.CoreV1Api(self._ensure_connected())
        messages: List[str] = []

        pods = await core.list_namespaced_pod(
            namespace, label_selector=label_selector(labels)
        )
        for pod in pods.items:
            for status in (pod.status.container_statuses if pod.status else None) or []:
                for state in (status.last_state, status.state):
                    if state and state.terminated and state.terminated.message:
                        messages.append(state.terminated.message)

        involved = [workload_name] + [p.metadata.name for p in pods.items]
        for name in involved:
            events = await core.list_namespaced_event(
                namespace, field_selector=f"involvedObject.name={name}"
            )
            messages.extend(e.message for e in events.items if e.message)
        return messages


class KedaAutoscalerBinder(_KubernetesBackend, AutoscalerBinder):
    """Autoscaler binder backed by KEDA ScaledObjects."""

    @property
    def name(self) -> str:
        return "keda"

    @property
    def version(self) -> str:
        return "1.0.0"

    async def create_or_update_binding(self, spec: BindingSpec) -> None:
        api = client.CustomObjectsApi(self._ensure_connected())
        body = scaled_object_body(spec)
        try:
            existing = await api.get_namespaced_custom_object(
                KEDA_GROUP, KEDA_VERSION, spec.namespace, KEDA_PLURAL, spec.name
            )
        except ApiException as e:
            if e.status != 404:
                raise
            logger.info(f"Creating ScaledObject {spec.namespace}/{spec.name}")
            await api.create_namespaced_custom_object(
                KEDA_GROUP, KEDA_VERSION, spec.namespace, KEDA_PLURAL, body
            )
            return

        live = existing.get("spec") or {}
        if all(live.get(k) == v for k, v in body["spec"].items()):
            return
        body["metadata"]["resourceVersion"] = existing["metadata"]["resourceVersion"]
        logger.info(f"Updating ScaledObject {spec.namespace}/{spec.name}")
        await api.replace_namespaced_custom_object(
            KEDA_GROUP, KEDA_VERSION, spec.namespace, KEDA_PLURAL, spec.name, body
        )
