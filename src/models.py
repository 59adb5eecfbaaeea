"""
Object model for Pub/Sub sources.

A Pub/Sub source declares a topic to pull from and a sink to deliver to.
The spec is immutable input per generation; the status is owned by the
reconcile driver and rewritten on every pass.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from conditions import Condition, ConditionSet

FINALIZER = "pubsubsources.events.cloud"


@dataclass
class ObjectReference:
    """Reference to an addressable object."""

    kind: str
    name: str
    api_version: str = ""
    namespace: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectReference":
        return cls(
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            api_version=data.get("apiVersion", ""),
            namespace=data.get("namespace"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {"kind": self.kind, "name": self.name, "apiVersion": self.api_version}
        if self.namespace:
            data["namespace"] = self.namespace
        return data


@dataclass
class Destination:
    """Either an object reference, a URI, or a reference plus relative URI."""

    ref: Optional[ObjectReference] = None
    uri: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Destination"]:
        if not data:
            return None
        ref = data.get("ref")
        return cls(
            ref=ObjectReference.from_dict(ref) if ref else None,
            uri=data.get("uri"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.ref:
            data["ref"] = self.ref.to_dict()
        if self.uri:
            data["uri"] = self.uri
        return data


@dataclass
class SecretKeySelector:
    """Credential reference: a key within a named secret."""

    name: str
    key: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "key": self.key}


@dataclass
class SourceSpec:
    """Desired state declared by the user."""

    topic: str
    sink: Optional[Destination] = None
    project: str = ""
    ack_deadline: Optional[str] = None
    retention_duration: Optional[str] = None
    retain_acked_messages: bool = False
    secret: Optional[SecretKeySelector] = None
    transformer: Optional[Destination] = None
    subscription_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceSpec":
        secret = data.get("secret")
        return cls(
            topic=data.get("topic", ""),
            sink=Destination.from_dict(data.get("sink")),
            project=data.get("project", "") or "",
            ack_deadline=data.get("ackDeadline"),
            retention_duration=data.get("retentionDuration"),
            retain_acked_messages=bool(data.get("retainAckedMessages", False)),
            secret=SecretKeySelector(secret["name"], secret["key"]) if secret else None,
            transformer=Destination.from_dict(data.get("transformer")),
            subscription_id=data.get("subscriptionId"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"topic": self.topic}
        if self.sink:
            data["sink"] = self.sink.to_dict()
        if self.project:
            data["project"] = self.project
        if self.ack_deadline is not None:
            data["ackDeadline"] = self.ack_deadline
        if self.retention_duration is not None:
            data["retentionDuration"] = self.retention_duration
        if self.retain_acked_messages:
            data["retainAckedMessages"] = True
        if self.secret:
            data["secret"] = self.secret.to_dict()
        if self.transformer:
            data["transformer"] = self.transformer.to_dict()
        if self.subscription_id:
            data["subscriptionId"] = self.subscription_id
        return data


@dataclass
class SourceStatus:
    """Observed state written back by the reconcile driver."""

    observed_generation: int = 0
    subscription_id: str = ""
    sink_uri: Optional[str] = None
    transformer_uri: Optional[str] = None
    project_id: str = ""
    conditions: ConditionSet = field(default_factory=ConditionSet)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SourceStatus":
        data = data or {}
        return cls(
            observed_generation=int(data.get("observedGeneration", 0) or 0),
            subscription_id=data.get("subscriptionId", "") or "",
            sink_uri=data.get("sinkUri"),
            transformer_uri=data.get("transformerUri"),
            project_id=data.get("projectId", "") or "",
            conditions=ConditionSet(
                [Condition.from_dict(c) for c in data.get("conditions", [])]
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "observedGeneration": self.observed_generation,
            "subscriptionId": self.subscription_id,
            "sinkUri": self.sink_uri,
            "transformerUri": self.transformer_uri,
            "projectId": self.project_id,
            "conditions": [c.to_dict() for c in self.conditions.to_list()],
        }


@dataclass
class PubSubSource:
    """A Pub/Sub source object as read from the resource store."""

    namespace: str
    name: str
    uid: str
    spec: SourceSpec
    generation: int = 1
    annotations: Dict[str, str] = field(default_factory=dict)
    status: SourceStatus = field(default_factory=SourceStatus)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    resource_version: int = 0

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str = FINALIZER) -> bool:
        return finalizer in self.finalizers

    def deepcopy(self) -> "PubSubSource":
        return copy.deepcopy(self)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "PubSubSource":
        """Build an object from a parsed resource-store row."""
        return cls(
            namespace=record["namespace"],
            name=record["name"],
            uid=str(record["uid"]),
            spec=SourceSpec.from_dict(record.get("spec") or {}),
            generation=record.get("generation", 1),
            annotations=dict(record.get("annotations") or {}),
            status=SourceStatus.from_dict(record.get("status")),
            finalizers=list(record.get("finalizers") or []),
            deletion_timestamp=record.get("deletion_timestamp"),
            resource_version=record.get("resource_version", 0),
        )


def parse_key(key: str) -> Optional[tuple]:
    """
    Split a ``namespace/name`` key.

    Returns:
        A ``(namespace, name)`` tuple, or None if the key is malformed.
    """
    parts = key.split("/")
    if len(parts) != 2 or not all(parts):
        return None
    return parts[0], parts[1]
