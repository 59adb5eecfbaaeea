"""
Desired-State Resolver - Normalize a source spec into a desired configuration.

Applies defaults, parses durations and scaling annotations, and resolves
the sink and transformer references to URIs. Resolution failures are
recorded on the status conditions and short-circuit the pass.
"""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urljoin, urlparse

from conditions import ConditionType
from events import Reason, ReconcileError
from models import Destination, PubSubSource, SourceStatus
from plugins.messaging.base import SubscriptionConfig
from plugins.resolvers.base import AddressResolver, ReferenceNotFound

logger = logging.getLogger(__name__)

DEFAULT_ACK_DEADLINE = timedelta(seconds=30)
DEFAULT_RETENTION_DURATION = timedelta(days=7)

# Documented range; out-of-range values are logged, not clamped.
MIN_RETENTION_DURATION = timedelta(minutes=10)
MAX_RETENTION_DURATION = timedelta(days=7)

AUTOSCALING_PREFIX = "autoscaling.events.cloud"
CLASS_ANNOTATION = f"{AUTOSCALING_PREFIX}/class"
MIN_SCALE_ANNOTATION = f"{AUTOSCALING_PREFIX}/minScale"
MAX_SCALE_ANNOTATION = f"{AUTOSCALING_PREFIX}/maxScale"
QUEUE_DEPTH_ANNOTATION = f"{AUTOSCALING_PREFIX}/queueDepthTarget"
COOLDOWN_ANNOTATION = f"{AUTOSCALING_PREFIX}/cooldownPeriod"
POLLING_ANNOTATION = f"{AUTOSCALING_PREFIX}/pollingInterval"

STATIC_CLASS = "static"
ELASTIC_CLASS = "elastic"

DEFAULT_MIN_SCALE = 0
DEFAULT_MAX_SCALE = 1
DEFAULT_QUEUE_DEPTH_TARGET = 100
DEFAULT_COOLDOWN_PERIOD = 120
DEFAULT_POLLING_INTERVAL = 15

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}
_UNIT_PATTERN = "|".join(sorted(map(re.escape, _UNIT_SECONDS), key=len, reverse=True))
_DURATION_RE = re.compile(rf"^(?:(?:\d+(?:\.\d*)?|\.\d+)(?:{_UNIT_PATTERN}))+$")
_COMPONENT_RE = re.compile(rf"(\d+(?:\.\d*)?|\.\d+)({_UNIT_PATTERN})")


def parse_duration(value: Optional[str]) -> Optional[timedelta]:
    """
    Parse a Go-style duration string such as ``30s``, ``1h30m`` or ``7d``.

    Returns:
        The duration, or None if the value is empty or malformed.
    """
    if not value:
        return None
    value = value.strip()
    if value == "0":
        return timedelta(0)
    if not _DURATION_RE.match(value):
        return None
    seconds = sum(
        float(number) * _UNIT_SECONDS[unit]
        for number, unit in _COMPONENT_RE.findall(value)
    )
    return timedelta(seconds=seconds)


def duration_or_default(value: Optional[str], default: timedelta) -> timedelta:
    """Parse a duration, silently falling back to the default."""
    parsed = parse_duration(value)
    if parsed is None:
        if value:
            logger.debug(f"Ignoring unparseable duration {value!r}, using {default}")
        return default
    return parsed


@dataclass(frozen=True)
class ScalingOptions:
    """Autoscaling settings read from annotations."""

    autoscaling_class: str = STATIC_CLASS
    min_scale: int = DEFAULT_MIN_SCALE
    max_scale: int = DEFAULT_MAX_SCALE
    queue_depth_target: int = DEFAULT_QUEUE_DEPTH_TARGET
    cooldown_period: int = DEFAULT_COOLDOWN_PERIOD
    polling_interval: int = DEFAULT_POLLING_INTERVAL

    @property
    def elastic(self) -> bool:
        return self.autoscaling_class == ELASTIC_CLASS

    @property
    def static_replicas(self) -> int:
        """Replica count pinned for the static class."""
        return min(max(self.min_scale, 1), self.max_scale)


def _int_annotation(annotations: Dict[str, str], key: str, default: int) -> int:
    raw = annotations.get(key)
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        logger.debug(f"Ignoring non-integer annotation {key}={raw!r}")
        return default
    return value if value >= 0 else default


def parse_scaling(annotations: Dict[str, str]) -> ScalingOptions:
    """
    Read scaling options from object annotations.

    Unparseable or negative integers fall back to the defaults and an
    unknown class is treated as static. A max scale below the min scale is
    raised to the min scale.
    """
    cls = (annotations.get(CLASS_ANNOTATION) or STATIC_CLASS).strip().lower()
    if cls != ELASTIC_CLASS:
        cls = STATIC_CLASS
    min_scale = _int_annotation(annotations, MIN_SCALE_ANNOTATION, DEFAULT_MIN_SCALE)
    max_scale = _int_annotation(annotations, MAX_SCALE_ANNOTATION, DEFAULT_MAX_SCALE)
    return ScalingOptions(
        autoscaling_class=cls,
        min_scale=min_scale,
        max_scale=max(max_scale, min_scale, 1),
        queue_depth_target=_int_annotation(
            annotations, QUEUE_DEPTH_ANNOTATION, DEFAULT_QUEUE_DEPTH_TARGET
        ),
        cooldown_period=_int_annotation(
            annotations, COOLDOWN_ANNOTATION, DEFAULT_COOLDOWN_PERIOD
        ),
        polling_interval=_int_annotation(
            annotations, POLLING_ANNOTATION, DEFAULT_POLLING_INTERVAL
        ),
    )


@dataclass(frozen=True)
class DesiredConfig:
    """Canonical desired state derived from a source for one pass."""

    project_id: str
    topic: str
    subscription: SubscriptionConfig
    sink_uri: str
    transformer_uri: Optional[str]
    scaling: ScalingOptions


class DesiredStateResolver:
    """Resolves a source into a DesiredConfig."""

    def __init__(self, resolver: AddressResolver, default_project: str = ""):
        self.resolver = resolver
        self.default_project = default_project

    async def resolve_destination(self, dest: Optional[Destination], namespace: str) -> str:
        """
        Resolve a destination to an absolute URI.

        Raises:
            ReferenceNotFound: Nothing to resolve, or the referenced object
                does not exist
            ReferenceNotReady: The referenced object has no address yet
        """
        if dest is None or (dest.ref is None and not dest.uri):
            raise ReferenceNotFound("destination is not set")
        if dest.ref is None:
            if not urlparse(dest.uri).scheme:
                raise ReferenceNotFound(f"URI {dest.uri!r} is not absolute")
            return dest.uri
        address = await self.resolver.resolve(dest.ref, namespace)
        if dest.uri:
            return urljoin(address if address.endswith("/") else address + "/", dest.uri)
        return address

    def subscription_config(self, source: PubSubSource) -> SubscriptionConfig:
        spec = source.spec
        retention = duration_or_default(
            spec.retention_duration, DEFAULT_RETENTION_DURATION
        )
        if not MIN_RETENTION_DURATION <= retention <= MAX_RETENTION_DURATION:
            logger.warning(
                f"[{source.key}] retention duration {retention} is outside "
                f"[{MIN_RETENTION_DURATION}, {MAX_RETENTION_DURATION}]"
            )
        ack_deadline = duration_or_default(spec.ack_deadline, DEFAULT_ACK_DEADLINE)
        # The service stores whole seconds.
        ack_deadline = timedelta(seconds=int(ack_deadline.total_seconds()))
        return SubscriptionConfig(
            ack_deadline=ack_deadline,
            retention_duration=retention,
            retain_acked_messages=spec.retain_acked_messages,
        )

    async def resolve(self, source: PubSubSource, status: SourceStatus) -> DesiredConfig:
        """
        Resolve the desired configuration of a source.

        Marks SinkResolved and TransformerResolved on ``status`` and records
        the resolved URIs and project id.

        Raises:
            ReconcileError: The sink or the transformer could not be resolved
        """
        conditions = status.conditions
        status.project_id = source.spec.project or self.default_project

        try:
            sink_uri = await self.resolve_destination(source.spec.sink, source.namespace)
        except Exception as e:
            status.sink_uri = None
            message = f"Failed to resolve sink: {e}"
            conditions.mark_false(ConditionType.SINK_RESOLVED, Reason.INVALID_SINK, message)
            raise ReconcileError(Reason.INVALID_SINK, message) from e
        status.sink_uri = sink_uri
        conditions.mark_true(ConditionType.SINK_RESOLVED)

        transformer_uri: Optional[str] = None
        if source.spec.transformer is None:
            conditions.mark_true(
                ConditionType.TRANSFORMER_RESOLVED, "TransformerNil", "Transformer is nil"
            )
        else:
            try:
                transformer_uri = await self.resolve_destination(
                    source.spec.transformer, source.namespace
                )
            except Exception as e:
                status.transformer_uri = None
                message = f"Failed to resolve transformer: {e}"
                conditions.mark_false(
                    ConditionType.TRANSFORMER_RESOLVED, Reason.INVALID_TRANSFORMER, message
                )
                raise ReconcileError(Reason.INVALID_TRANSFORMER, message) from e
            conditions.mark_true(ConditionType.TRANSFORMER_RESOLVED)
        status.transformer_uri = transformer_uri

        return DesiredConfig(
            project_id=status.project_id,
            topic=source.spec.topic,
            subscription=self.subscription_config(source),
            sink_uri=sink_uri,
            transformer_uri=transformer_uri,
            scaling=parse_scaling(source.annotations),
        )
