"""
Condition Model - Typed readiness conditions for Pub/Sub sources.

Mirrors the Kubernetes condition convention: a typed tri-state status
with a machine-readable reason and a human message.
A living condition set aggregates the required sub-conditions into a single
top-level Ready condition.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence


class ConditionStatus(Enum):
    """Tri-state status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionType:
    """Condition types reported on a Pub/Sub source."""

    READY = "Ready"
    SINK_RESOLVED = "SinkResolved"
    TRANSFORMER_RESOLVED = "TransformerResolved"
    SUBSCRIPTION_READY = "SubscriptionReady"
    DEPLOYED = "Deployed"


REQUIRED_CONDITIONS = (
    ConditionType.SINK_RESOLVED,
    ConditionType.TRANSFORMER_RESOLVED,
    ConditionType.SUBSCRIPTION_READY,
    ConditionType.DEPLOYED,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Condition:
    """A single named condition."""

    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None

    def is_true(self) -> bool:
        return self.status == ConditionStatus.TRUE

    def is_false(self) -> bool:
        return self.status == ConditionStatus.FALSE

    def same_state(self, other: "Condition") -> bool:
        """Compare everything except the transition time."""
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": (
                self.last_transition_time.isoformat()
                if self.last_transition_time
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        ltt = data.get("lastTransitionTime")
        return cls(
            type=data["type"],
            status=ConditionStatus(data.get("status", "Unknown")),
            reason=data.get("reason", "") or "",
            message=data.get("message", "") or "",
            last_transition_time=datetime.fromisoformat(ltt) if ltt else None,
        )


def aggregate(
    conditions: Dict[str, Condition], required: Sequence[str]
) -> Condition:
    """
    Compute the top-level Ready condition from the required sub-conditions.

    Ready is True only when every required sub-condition is True. A False
    sub-condition takes precedence over an Unknown one so that a concrete
    failure reason is reported; among several, the first in ``required``
    order wins.

    Args:
        conditions: Current sub-conditions keyed by type.
        required: Ordered list of required condition types.

    Returns:
        The Ready condition (without a transition time).
    """
    first_unknown: Optional[Condition] = None
    for cond_type in required:
        cond = conditions.get(cond_type) or Condition(type=cond_type)
        if cond.is_false():
            return Condition(
                type=ConditionType.READY,
                status=ConditionStatus.FALSE,
                reason=cond.reason,
                message=cond.message,
            )
        if not cond.is_true() and first_unknown is None:
            first_unknown = cond

    if first_unknown is not None:
        return Condition(
            type=ConditionType.READY,
            status=ConditionStatus.UNKNOWN,
            reason=first_unknown.reason,
            message=first_unknown.message,
        )
    return Condition(type=ConditionType.READY, status=ConditionStatus.TRUE)


class ConditionSet:
    """
    Mutable set of conditions with a living Ready condition.

    Every mutation through ``set`` recomputes Ready, so the set is always
    internally consistent.
    """

    def __init__(
        self,
        conditions: Optional[List[Condition]] = None,
        required: Sequence[str] = REQUIRED_CONDITIONS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.required = tuple(required)
        self._clock = clock
        self._conditions: Dict[str, Condition] = {}
        for cond in conditions or []:
            self._conditions[cond.type] = cond

    def get(self, cond_type: str) -> Optional[Condition]:
        return self._conditions.get(cond_type)

    def initialize(self) -> None:
        """Set every required condition (and Ready) to Unknown if absent."""
        for cond_type in (*self.required, ConditionType.READY):
            if cond_type not in self._conditions:
                self._conditions[cond_type] = Condition(
                    type=cond_type, last_transition_time=self._clock()
                )

    def set(
        self,
        cond_type: str,
        status: ConditionStatus,
        reason: str = "",
        message: str = "",
    ) -> bool:
        """
        Set a condition, recomputing Ready.

        Identical values are a no-op so repeated passes do not churn the
        status. The transition time only moves when the status changes.

        Returns:
            True if anything changed.
        """
        changed = self._put(
            Condition(type=cond_type, status=status, reason=reason, message=message)
        )
        if cond_type != ConditionType.READY:
            changed = self.aggregate() or changed
        return changed

    def mark_true(self, cond_type: str, reason: str = "", message: str = "") -> bool:
        return self.set(cond_type, ConditionStatus.TRUE, reason, message)

    def mark_false(self, cond_type: str, reason: str, message: str = "") -> bool:
        return self.set(cond_type, ConditionStatus.FALSE, reason, message)

    def mark_unknown(self, cond_type: str, reason: str, message: str = "") -> bool:
        return self.set(cond_type, ConditionStatus.UNKNOWN, reason, message)

    def aggregate(self) -> bool:
        """Recompute Ready from the sub-conditions."""
        return self._put(aggregate(self._conditions, self.required))

    def is_ready(self) -> bool:
        ready = self._conditions.get(ConditionType.READY)
        return ready is not None and ready.is_true()

    def to_list(self) -> List[Condition]:
        return sorted(self._conditions.values(), key=lambda c: c.type)

    def _put(self, new: Condition) -> bool:
        current = self._conditions.get(new.type)
        if current is not None and current.same_state(new):
            return False
        if current is not None and current.status == new.status:
            ltt = current.last_transition_time
        else:
            ltt = self._clock()
        self._conditions[new.type] = replace(new, last_transition_time=ltt)
        return True
