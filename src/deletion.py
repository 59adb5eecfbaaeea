"""
Deletion Coordinator - Finalizer-guarded teardown of a Pub/Sub source.

Deletes the subscription owned by a source before releasing the
finalizer. The receive adapter and the autoscaler binding are owned by
the source and are left to garbage collection.
"""

import logging

from events import Reason, ReconcileError
from models import FINALIZER, PubSubSource
from messaging import SubscriptionReconciler

logger = logging.getLogger(__name__)


class DeletionCoordinator:
    """Runs the delete path for sources marked for deletion."""

    def __init__(self, store, subscriptions: SubscriptionReconciler, default_project: str = ""):
        self.store = store
        self.subscriptions = subscriptions
        self.default_project = default_project

    async def finalize(self, source: PubSubSource) -> bool:
        """
        Clean up a source and release its finalizer.

        Does nothing unless the source is being deleted and still carries
        the finalizer. The status is never written on this path.

        Returns:
            True if the object was removed from the store.

        Raises:
            ReconcileError: The subscription could not be deleted; the
                finalizer is kept
            ConflictError: The object changed before the finalizer was removed
        """
        if not source.is_deleting or not source.has_finalizer(FINALIZER):
            return False

        sub_id = source.status.subscription_id
        if sub_id:
            project_id = (
                source.status.project_id or source.spec.project or self.default_project
            )
            try:
                await self.subscriptions.delete(project_id, sub_id)
            except Exception as e:
                raise ReconcileError(
                    Reason.SUBSCRIPTION_DELETE_FAILED,
                    f"Failed to delete Pub/Sub subscription: {e}",
                ) from e
            logger.info(f"[{source.key}] Deleted subscription {sub_id}")
        else:
            logger.info(f"[{source.key}] No subscription recorded, nothing to delete")

        removed = await self.store.remove_finalizer(
            source.namespace, source.name, FINALIZER, source.resource_version
        )
        logger.info(f"[{source.key}] Removed finalizer {FINALIZER}")
        return removed
