"""
Messaging Resource Reconciler - Converge the Pub/Sub subscription of a source.

Ensures the topic exists, then creates or updates the subscription so its
delivery parameters match the desired configuration. Every remote failure
is reported on the SubscriptionReady condition and retried by the driver.
"""

import logging
from typing import Optional

from conditions import ConditionType
from events import Reason, ReconcileError
from models import PubSubSource, SourceStatus
from naming import subscription_id_for
from plugins.messaging.base import MessagingAdmin, MessagingClient, Subscription
from resolver import DesiredConfig

logger = logging.getLogger(__name__)

CLIENT_CREATE_FAILED = Reason.CLIENT_CREATE_FAILED
TOPIC_NOT_FOUND = "TopicNotFound"
SUBSCRIPTION_READY = "SubscriptionReady"


def _failure_message(err) -> str:
    return f"Failed to reconcile Pub/Sub subscription: {err}"


class SubscriptionReconciler:
    """Creates, updates and deletes subscriptions through a MessagingAdmin."""

    def __init__(self, admin: MessagingAdmin):
        self.admin = admin

    async def _client(self, project_id: str) -> MessagingClient:
        if not project_id:
            raise ValueError("project id is not set and no default project is configured")
        return await self.admin.create_client(project_id)

    async def _close(self, client: MessagingClient) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"Error closing messaging client: {e}")

    def _fail(
        self,
        status: SourceStatus,
        reason: str,
        message: str,
        notice_reason: str = Reason.SUBSCRIPTION_RECONCILE_FAILED,
    ) -> ReconcileError:
        status.conditions.mark_false(ConditionType.SUBSCRIPTION_READY, reason, message)
        return ReconcileError(notice_reason, message)

    async def reconcile(
        self, source: PubSubSource, status: SourceStatus, desired: DesiredConfig
    ) -> str:
        """
        Ensure the subscription of a source exists and matches ``desired``.

        Records the subscription id on ``status`` and marks SubscriptionReady.

        Returns:
            The subscription id.

        Raises:
            ReconcileError: Any step failed; SubscriptionReady is False
        """
        try:
            client = await self._client(desired.project_id)
        except Exception as e:
            raise self._fail(
                status,
                CLIENT_CREATE_FAILED,
                _failure_message(e),
                notice_reason=Reason.CLIENT_CREATE_FAILED,
            ) from e

        try:
            sub_id = await self._ensure(client, source, status, desired)
        except ReconcileError:
            raise
        except Exception as e:
            logger.error(f"[{source.key}] Subscription reconcile failed: {e}")
            raise self._fail(
                status, Reason.SUBSCRIPTION_RECONCILE_FAILED, _failure_message(e)
            ) from e
        finally:
            await self._close(client)

        status.subscription_id = sub_id
        status.conditions.mark_true(ConditionType.SUBSCRIPTION_READY, SUBSCRIPTION_READY)
        return sub_id

    async def _ensure(
        self,
        client: MessagingClient,
        source: PubSubSource,
        status: SourceStatus,
        desired: DesiredConfig,
    ) -> str:
        topic = await client.get_topic(desired.topic)
        if topic is None:
            # The topic may be created out-of-band; keep retrying.
            message = f'Topic "{desired.topic}" does not exist'
            raise self._fail(status, TOPIC_NOT_FOUND, message)

        sub_id = status.subscription_id
        existing: Optional[Subscription] = None
        if sub_id:
            existing = await client.get_subscription(sub_id)
            if existing is None:
                logger.info(
                    f"[{source.key}] Subscription {sub_id} was deleted out-of-band, "
                    f"recreating"
                )
                status.subscription_id = ""
                sub_id = ""

        if not sub_id:
            sub_id = source.spec.subscription_id or subscription_id_for(
                source.namespace, source.name, source.uid
            )
            existing = await client.get_subscription(sub_id)

        if existing is None:
            await client.create_subscription(sub_id, desired.topic, desired.subscription)
            logger.info(f"[{source.key}] Created subscription {sub_id}")
            return sub_id

        fields = desired.subscription.diff(existing.config)
        if fields:
            await client.update_subscription(sub_id, desired.subscription, fields)
            logger.info(
                f"[{source.key}] Updated subscription {sub_id}: {', '.join(fields)}"
            )
        return sub_id

    async def delete(self, project_id: str, subscription_id: str) -> None:
        """
        Delete a subscription. An already-absent subscription is success.

        Raises:
            Exception: Client creation or the remote delete failed
        """
        client = await self._client(project_id)
        try:
            await client.delete_subscription(subscription_id)
        finally:
            await self._close(client)
