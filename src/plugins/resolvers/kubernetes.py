"""
Kubernetes address resolver.

Core Services resolve to their cluster-local DNS name. Any other kind is
treated as an Addressable custom object and resolves to the URL published
in its ``status.address.url``.
"""

import logging
import os
from typing import Any, Dict, Optional

from kubernetes_asyncio import client
from kubernetes_asyncio.client.api_client import ApiClient
from kubernetes_asyncio.client.rest import ApiException

from plugins.kube import load_kube_config_from_env, new_api_client
from plugins.resolvers.base import AddressResolver, ReferenceNotFound, ReferenceNotReady

logger = logging.getLogger(__name__)


def plural_for(kind: str) -> str:
    """Lower-case plural resource name for a kind, e.g. Broker -> brokers."""
    lower = kind.lower()
    if lower.endswith("s"):
        return lower + "es"
    if lower.endswith("y") and lower[-2:-1] not in "aeiou":
        return lower[:-1] + "ies"
    return lower + "s"


class KubernetesAddressResolver(AddressResolver):
    """Resolves Services and Addressable objects in a cluster."""

    def __init__(self):
        self._config: Dict[str, Any] = {}
        self._api_client: Optional[ApiClient] = None
        self._cluster_domain = "cluster.local"

    @property
    def name(self) -> str:
        return "kubernetes"

    @property
    def version(self) -> str:
        return "1.0.0"

    async def initialize(self, config: Dict[str, Any]) -> None:
        self._config = config
        self._api_client = await new_api_client(config)
        self._cluster_domain = config.get("cluster_domain", "cluster.local")
        logger.info("Initialized Kubernetes address resolver")

    async def close(self) -> None:
        if self._api_client:
            await self._api_client.close()
            self._api_client = None

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        cfg = load_kube_config_from_env()
        cfg["cluster_domain"] = os.environ.get("CLUSTER_DOMAIN", "cluster.local")
        return cfg

    async def resolve(self, ref, namespace: str) -> str:
        if not self._api_client:
            raise RuntimeError("Kubernetes address resolver not initialized")
        ns = ref.namespace or namespace
        desc = f"{ref.kind} {ns}/{ref.name}"

        if ref.kind == "Service" and ref.api_version in ("", "v1"):
            try:
                await client.CoreV1Api(self._api_client).read_namespaced_service(
                    ref.name, ns
                )
            except ApiException as e:
                if e.status == 404:
                    raise ReferenceNotFound(f"{desc} not found")
                raise
            return f"http://{ref.name}.{ns}.svc.{self._cluster_domain}"

        group, _, version = ref.api_version.rpartition("/")
        try:
            obj = await client.CustomObjectsApi(
                self._api_client
            ).get_namespaced_custom_object(
                group, version, ns, plural_for(ref.kind), ref.name
            )
        except ApiException as e:
            if e.status == 404:
                raise ReferenceNotFound(f"{desc} not found")
            raise

        url = ((obj.get("status") or {}).get("address") or {}).get("url")
        if not url:
            raise ReferenceNotReady(f"{desc} does not have an address")
        return url
