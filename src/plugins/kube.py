"""
Shared Kubernetes API client setup for the Kubernetes backends.
"""

import os
from typing import Any, Dict

from kubernetes_asyncio import client, config as kube_config
from kubernetes_asyncio.client.api_client import ApiClient

from plugins.base import logger


def load_kube_config_from_env() -> Dict[str, Any]:
    """Configuration shared by all Kubernetes backends."""
    return {
        "in_cluster": bool(os.environ.get("KUBERNETES_SERVICE_HOST")),
        "kubeconfig": os.environ.get("KUBECONFIG", ""),
        "context": os.environ.get("KUBE_CONTEXT", "") or None,
    }


async def new_api_client(cfg: Dict[str, Any]) -> ApiClient:
    """
    Build an API client from in-cluster or kubeconfig credentials.

    Args:
        cfg: Backend configuration as returned by load_kube_config_from_env()
    """
    configuration = client.Configuration()
    if cfg.get("in_cluster"):
        kube_config.load_incluster_config(client_configuration=configuration)
        logger.info("Loaded in-cluster Kubernetes configuration")
    else:
        await kube_config.load_kube_config(
            config_file=cfg.get("kubeconfig") or None,
            context=cfg.get("context"),
            client_configuration=configuration,
        )
        logger.info("Loaded Kubernetes configuration from kubeconfig")
    return ApiClient(configuration=configuration)


def label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
