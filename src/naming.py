"""
Deterministic naming for resources owned by a Pub/Sub source.

Names are pure functions of stable identifiers so that a pass interrupted
mid-way rediscovers the same subscription and workload instead of creating
duplicates.
"""

import hashlib
from typing import Dict

CONTROLLER_AGENT_NAME = "pubsub-source-controller"

CONTROLLER_LABEL = "events.cloud/controller"
SOURCE_LABEL = "events.cloud/pubsubsource"

SUBSCRIPTION_PREFIX = "cre-ps"
MAX_SUBSCRIPTION_ID_LENGTH = 255

# Kubernetes object names (DNS-1123 labels) are capped at 63 characters.
MAX_NAME_LENGTH = 63
_MD5_HEX_LENGTH = 32


def _md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def child_name(parent: str, suffix: str) -> str:
    """
    Build a child object name no longer than 63 characters.

    Short names are ``parent + suffix``. Long parents are truncated and
    made unique again by appending the md5 of the full parent.
    """
    head = MAX_NAME_LENGTH - _MD5_HEX_LENGTH
    if len(parent) > MAX_NAME_LENGTH - len(suffix):
        parent = f"{parent[:head - len(suffix)]}{_md5(parent)}"
    return parent + suffix


def subscription_id_for(namespace: str, name: str, uid: str) -> str:
    """
    Derive the subscription id for a source.

    Format is ``cre-ps_<namespace>_<name>_<uid>``; ids over the Pub/Sub
    limit are truncated and suffixed with a hash of the full id.
    """
    sub_id = f"{SUBSCRIPTION_PREFIX}_{namespace}_{name}_{uid}"
    if len(sub_id) <= MAX_SUBSCRIPTION_ID_LENGTH:
        return sub_id
    keep = MAX_SUBSCRIPTION_ID_LENGTH - _MD5_HEX_LENGTH - 1
    return f"{sub_id[:keep]}_{_md5(sub_id)}"


def workload_name_for(name: str, subscription_id: str) -> str:
    """Derive the receive adapter workload name."""
    return child_name(f"{SUBSCRIPTION_PREFIX}-{name}-", _md5(subscription_id)[:8])


def workload_labels(name: str) -> Dict[str, str]:
    """Labels identifying the workload (and its pods) of a source."""
    return {
        CONTROLLER_LABEL: CONTROLLER_AGENT_NAME,
        SOURCE_LABEL: name,
    }
