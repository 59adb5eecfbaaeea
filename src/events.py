"""
Notices - Human-readable normal/warning events about Pub/Sub sources.

Reconcile passes record notices through an EventRecorder. Notices are
logged, kept in a bounded in-memory history per object, and fanned out to
Server-Sent Events (SSE) watchers through the EventBus, similar to
Kubernetes Events and the watch API.
"""

import asyncio
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class NoticeType(Enum):
    """Severity of a notice."""

    NORMAL = "Normal"
    WARNING = "Warning"


class Reason:
    """Notice reasons emitted by the controller."""

    FINALIZER_UPDATE = "FinalizerUpdate"
    RECONCILED = "PubSubSourceReconciled"
    INVALID_SINK = "InvalidSink"
    INVALID_TRANSFORMER = "InvalidTransformer"
    CLIENT_CREATE_FAILED = "ClientCreateFailed"
    SUBSCRIPTION_RECONCILE_FAILED = "SubscriptionReconcileFailed"
    SUBSCRIPTION_DELETE_FAILED = "SubscriptionDeleteFailed"
    DATA_PLANE_RECONCILE_FAILED = "DataPlaneReconcileFailed"


class ReconcileError(Exception):
    """
    A failed reconcile step that should be reported to the user.

    Raised by the reconcilers after they have marked the relevant condition.
    The driver turns it into a notice and a requeue.
    """

    def __init__(
        self,
        reason: str,
        message: str,
        notice_type: NoticeType = NoticeType.WARNING,
    ):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.notice_type = notice_type


@dataclass
class Notice:
    """A single notice about an object."""

    notice_type: NoticeType
    reason: str
    message: str
    namespace: str
    name: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "type": self.notice_type.value,
            "reason": self.reason,
            "message": self.message,
            "namespace": self.namespace,
            "name": self.name,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_sse(self) -> str:
        """
        Format the notice as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        return f"event: {self.notice_type.value}\ndata: {json.dumps(self.to_dict())}\n\n"


class EventSubscription:
    """
    Async iterator for consuming notices from a subscription.

    Reads notices from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[Notice], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[Notice]:
        return self

    async def __anext__(self) -> Notice:
        while True:
            notice = await self._queue.get()

            if notice is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(notice):
                return notice


class EventBus:
    """
    In-memory fan-out of notices to watchers.

    Maintains an ``asyncio.Queue`` per subscriber and publishes
    non-blocking. Full queues drop the notice for that subscriber so a slow
    watcher never stalls a reconcile pass.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, notice: Notice) -> None:
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(notice)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped notice for subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[Notice], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to notices.

        Args:
            filter_fn: Optional predicate applied to each notice.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New notice subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        return len(self._subscribers)


class EventRecorder:
    """Records notices for objects."""

    def __init__(self, bus: Optional[EventBus] = None, history_size: int = 1000):
        self.bus = bus
        self._history: Deque[Notice] = deque(maxlen=history_size)

    async def record(
        self,
        notice_type: NoticeType,
        namespace: str,
        name: str,
        reason: str,
        message: str,
    ) -> Notice:
        notice = Notice(notice_type, reason, message, namespace, name)
        level = logging.INFO if notice_type == NoticeType.NORMAL else logging.WARNING
        logger.log(level, f"[{notice.key}] {reason}: {message}")
        self._history.append(notice)
        if self.bus is not None:
            await self.bus.publish(notice)
        return notice

    async def normal(self, namespace: str, name: str, reason: str, message: str) -> Notice:
        return await self.record(NoticeType.NORMAL, namespace, name, reason, message)

    async def warning(
        self, namespace: str, name: str, reason: str, message: str
    ) -> Notice:
        return await self.record(NoticeType.WARNING, namespace, name, reason, message)

    def events_for(self, namespace: str, name: str) -> List[Notice]:
        """Recorded notices for one object, oldest first."""
        return [n for n in self._history if n.namespace == namespace and n.name == name]
