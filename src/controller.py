"""
Operator Controller - Reconcile driver and dispatch loop.

Similar to Kubernetes controllers, continuously reconciles the desired
state of each Pub/Sub source with the subscription, receive adapter and
autoscaler binding that implement it. The Reconciler runs one pass for one
key; the Controller decides which keys run, when, and how often.
"""

import asyncio
import copy
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from conditions import ConditionType
from dataplane import DataPlaneReconciler
from db import ConflictError
from deletion import DeletionCoordinator
from events import EventRecorder, Reason, ReconcileError
from messaging import SubscriptionReconciler
from models import FINALIZER, PubSubSource, SourceStatus, parse_key
from resolver import DesiredStateResolver

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Where a pass ended."""

    INITIALIZING = "Initializing"
    RESOLVING = "Resolving"
    RECONCILING_MESSAGING = "ReconcilingMessaging"
    RECONCILING_DATA_PLANE = "ReconcilingDataPlane"
    READY = "Ready"
    DEGRADED = "Degraded"
    DELETING = "Deleting"
    FINALIZED = "Finalized"


@dataclass
class ReconcileResult:
    """Result of one reconcile pass."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[float] = None
    phase: Phase = Phase.INITIALIZING
    trigger_reason: str = ""


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    reconcile_interval: int = 10
    max_concurrent_reconciles: int = 5
    pass_timeout: int = 120
    resync_interval: int = 300
    not_ready_requeue: int = 30

    # Exponential backoff configuration
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 3600  # max delay in seconds (1 hour)
    backoff_jitter_factor: float = 0.1  # ±10% jitter


def backoff_delay(
    failures: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Exponential backoff with jitter.

    Args:
        failures: Consecutive failures before this one (0 on first failure)
        base_delay: Delay after the first failure, in seconds
        max_delay: Cap applied before jitter, in seconds
        jitter_factor: Relative jitter, e.g. 0.1 for ±10%

    Returns:
        ``min(base * 2**failures, max) * (1 ± jitter)`` in seconds.
    """
    delay = min(base_delay * 2 ** min(max(failures, 0), 32), max_delay)
    return delay * (1 + (rand() * 2 - 1) * jitter_factor)


def determine_trigger_reason(record: Dict[str, Any]) -> str:
    """Determine why this reconciliation was triggered."""
    observed = (record.get("status") or {}).get("observedGeneration", 0) or 0
    if record.get("deletion_timestamp") is not None:
        return "deletion"
    elif record.get("last_reconcile_time") is None:
        return "initial"
    elif record.get("generation", 0) > observed:
        return "spec_change"
    elif record.get("failure_count", 0):
        return "retry"
    else:
        return "scheduled"


class Reconciler:
    """
    Reconcile driver for a single Pub/Sub source.

    Each pass reads the object fresh from the store, works on a private
    copy of its status and writes the status back in one step, so no
    state survives between passes except what was persisted.
    """

    def __init__(
        self,
        store,
        resolver: DesiredStateResolver,
        subscriptions: SubscriptionReconciler,
        dataplane: DataPlaneReconciler,
        deletion: DeletionCoordinator,
        recorder: EventRecorder,
        max_conflict_retries: int = 3,
        not_ready_requeue: float = 30,
    ):
        self.store = store
        self.resolver = resolver
        self.subscriptions = subscriptions
        self.dataplane = dataplane
        self.deletion = deletion
        self.recorder = recorder
        self.max_conflict_retries = max_conflict_retries
        self.not_ready_requeue = not_ready_requeue

    async def reconcile(self, key: str) -> ReconcileResult:
        """
        Run one pass for ``namespace/name``.

        Malformed keys and objects that no longer exist are dropped. A
        write conflict re-runs the pass against the fresh object.
        """
        parsed = parse_key(key)
        if parsed is None:
            logger.error(f"Dropping malformed key {key!r}")
            return ReconcileResult(success=True, message=f"invalid key {key!r}")
        namespace, name = parsed

        for attempt in range(self.max_conflict_retries + 1):
            record = await self.store.get_source(namespace, name)
            if record is None:
                logger.info(f"[{key}] No longer exists, dropping")
                return ReconcileResult(
                    success=True, message="not found", phase=Phase.FINALIZED
                )

            source = PubSubSource.from_record(record)
            trigger_reason = determine_trigger_reason(record)
            try:
                result = await self._reconcile_once(source)
            except ConflictError as e:
                logger.info(f"[{key}] Conflict (attempt {attempt + 1}): {e}")
                continue
            result.trigger_reason = trigger_reason
            return result

        return ReconcileResult(
            success=False,
            message=f"gave up after {self.max_conflict_retries + 1} conflicting writes",
            phase=Phase.DEGRADED,
        )

    async def _reconcile_once(self, source: PubSubSource) -> ReconcileResult:
        if source.is_deleting:
            return await self._finalize(source)

        if not source.has_finalizer(FINALIZER):
            source.resource_version = await self.store.add_finalizer(
                source.namespace, source.name, FINALIZER, source.resource_version
            )
            source.finalizers.append(FINALIZER)
            await self.recorder.normal(
                source.namespace,
                source.name,
                Reason.FINALIZER_UPDATE,
                f'Updated "{source.name}" finalizers',
            )

        status = copy.deepcopy(source.status)
        status.conditions.initialize()
        phase = Phase.RESOLVING
        try:
            desired = await self.resolver.resolve(source, status)
            phase = Phase.RECONCILING_MESSAGING
            sub_id = await self.subscriptions.reconcile(source, status, desired)
            phase = Phase.RECONCILING_DATA_PLANE
            await self.dataplane.reconcile(source, status, desired, sub_id)
        except ReconcileError as e:
            status.observed_generation = source.generation
            await self._write_status(source, status)
            await self.recorder.record(
                e.notice_type, source.namespace, source.name, e.reason, e.message
            )
            logger.warning(f"[{source.key}] Pass failed during {phase.value}: {e.message}")
            return ReconcileResult(success=False, message=e.message, phase=Phase.DEGRADED)

        status.observed_generation = source.generation
        await self._write_status(source, status)
        await self.recorder.normal(
            source.namespace,
            source.name,
            Reason.RECONCILED,
            f'PubSubSource reconciled: "{source.key}"',
        )

        if status.conditions.is_ready():
            return ReconcileResult(success=True, message="Ready", phase=Phase.READY)
        ready = status.conditions.get(ConditionType.READY)
        return ReconcileResult(
            success=True,
            message=ready.message if ready else "",
            requeue_after=self.not_ready_requeue,
            phase=Phase.RECONCILING_DATA_PLANE,
        )

    async def _write_status(self, source: PubSubSource, status: SourceStatus) -> None:
        """Persist the status if the pass changed it."""
        new = status.to_dict()
        if new == source.status.to_dict():
            return
        source.resource_version = await self.store.update_status(
            source.namespace, source.name, new, source.resource_version
        )

    async def _finalize(self, source: PubSubSource) -> ReconcileResult:
        if not source.has_finalizer(FINALIZER):
            return ReconcileResult(
                success=True,
                message=f"waiting on finalizers {source.finalizers}",
                phase=Phase.FINALIZED,
            )
        try:
            await self.deletion.finalize(source)
        except ReconcileError as e:
            await self.recorder.record(
                e.notice_type, source.namespace, source.name, e.reason, e.message
            )
            return ReconcileResult(success=False, message=e.message, phase=Phase.DELETING)

        await self.recorder.normal(
            source.namespace,
            source.name,
            Reason.FINALIZER_UPDATE,
            f'Updated "{source.name}" finalizers',
        )
        return ReconcileResult(success=True, message="Finalized", phase=Phase.FINALIZED)


class Controller:
    """
    Dispatch loop that feeds keys to the Reconciler.

    Polls the store for keys needing reconciliation and runs passes
    concurrently up to a limit. A key runs at most once at a time; an
    explicit trigger arriving mid-pass re-runs the key once afterwards.
    """

    def __init__(
        self,
        store,
        reconciler: Reconciler,
        config: Optional[ControllerConfig] = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.config = config or ControllerConfig()
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False

        self._in_flight: Set[str] = set()
        self._dirty: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    async def start(self):
        """Start the reconciliation loop."""
        logger.info("Starting PubSubSource Controller")
        self.running = True
        await self._reconciliation_loop()

    async def stop(self):
        """Stop polling and wait for in-flight passes to finish."""
        logger.info("Stopping PubSubSource Controller")
        self.running = False
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _reconciliation_loop(self):
        """Main loop - watches for sources needing reconciliation."""
        while self.running:
            try:
                keys = await self.store.get_keys_needing_reconciliation(
                    limit=self.max_concurrent_reconciles * 2
                )
                started = [k for k in keys if self.enqueue(k, coalesce=False)]
                if started:
                    logger.info(f"Dispatched {len(started)} sources for reconciliation")

                await asyncio.sleep(self.reconcile_interval)

            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
                await asyncio.sleep(10)

    def enqueue(self, key: str, coalesce: bool = True) -> bool:
        """
        Dispatch a pass for a key unless one is already running.

        Args:
            key: ``namespace/name`` of the source
            coalesce: Mark a busy key to run again after its current pass

        Returns:
            True if a new pass was started.
        """
        if key in self._in_flight:
            if coalesce:
                self._dirty.add(key)
            return False
        self._in_flight.add(key)
        task = asyncio.create_task(self._process(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _process(self, key: str) -> None:
        try:
            while True:
                self._dirty.discard(key)
                await self._reconcile_key(key)
                if key not in self._dirty or not self.running:
                    break
                logger.debug(f"[{key}] Re-running coalesced trigger")
        finally:
            self._in_flight.discard(key)
            self._dirty.discard(key)

    async def _reconcile_key(self, key: str) -> ReconcileResult:
        """Run one pass under the concurrency limit and the pass deadline."""
        async with self.semaphore:
            start_time = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    self.reconciler.reconcile(key), timeout=self.config.pass_timeout
                )
            except asyncio.TimeoutError:
                logger.error(
                    f"[{key}] Pass exceeded {self.config.pass_timeout}s and was cancelled"
                )
                result = ReconcileResult(
                    success=False,
                    message=f"pass timed out after {self.config.pass_timeout}s",
                    phase=Phase.DEGRADED,
                )
            except Exception as e:
                logger.error(f"[{key}] Error reconciling: {e}", exc_info=True)
                result = ReconcileResult(
                    success=False,
                    message=f"Reconciliation error: {e}",
                    phase=Phase.DEGRADED,
                )
            duration_seconds = time.monotonic() - start_time

            try:
                await self._schedule(key, result, duration_seconds)
            except Exception as e:
                logger.error(f"[{key}] Error scheduling next pass: {e}", exc_info=True)
            return result

    async def _schedule(
        self, key: str, result: ReconcileResult, duration_seconds: float
    ) -> None:
        parsed = parse_key(key)
        if parsed is None:
            return
        namespace, name = parsed

        if result.success:
            delay = result.requeue_after or self.config.resync_interval
            await self.store.schedule_reconcile(
                namespace, name, delay, reset_failures=True
            )
            logger.info(f"[{key}] {result.phase.value}; next pass in {delay:.0f}s")
        else:
            failures = await self.store.record_failure(namespace, name)
            delay = result.requeue_after or backoff_delay(
                failures - 1,
                self.config.backoff_base_delay,
                self.config.backoff_max_delay,
                self.config.backoff_jitter_factor,
            )
            await self.store.schedule_reconcile(namespace, name, delay)
            logger.info(
                f"[{key}] {result.phase.value} after {failures} consecutive "
                f"failure(s); retrying in {delay:.1f}s"
            )

        await self.store.record_reconciliation(
            namespace,
            name,
            success=result.success,
            phase=result.phase.value,
            message=result.message,
            duration_seconds=duration_seconds,
            trigger_reason=result.trigger_reason or None,
        )

    async def trigger_reconciliation(self, namespace: str, name: str) -> bool:
        """
        Manually trigger reconciliation for a source.

        Returns:
            False if the source does not exist.
        """
        logger.info(f"Manually triggering reconciliation for {namespace}/{name}")
        if not await self.store.mark_for_reconciliation(namespace, name):
            return False
        if self.running:
            self.enqueue(f"{namespace}/{name}")
        return True
