"""
Google Cloud Pub/Sub messaging backend.

Uses the asyncio gRPC clients of google-cloud-pubsub. Credentials come
from Application Default Credentials, with the project used as the quota
project so API usage is billed to the project that owns the topic.
"""

import asyncio
import logging
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional

import google.auth
from google.api_core import exceptions
from google.api_core.client_options import ClientOptions
from google.auth.credentials import Credentials
from google.protobuf import field_mask_pb2
from google.pubsub_v1 import types as pubsub_types
from google.pubsub_v1.services.publisher import PublisherAsyncClient
from google.pubsub_v1.services.subscriber import SubscriberAsyncClient

from plugins.messaging.base import (
    MessagingAdmin,
    MessagingClient,
    Subscription,
    SubscriptionConfig,
    Topic,
)

logger = logging.getLogger(__name__)


def _get_gcp_creds(quota_project_id: str) -> Credentials:
    creds, _ = google.auth.default(quota_project_id=quota_project_id)
    return creds


def _to_subscription(sub: pubsub_types.Subscription) -> Subscription:
    return Subscription(
        id=SubscriberAsyncClient.parse_subscription_path(sub.name)["subscription"],
        topic=sub.topic,
        config=SubscriptionConfig(
            ack_deadline=timedelta(seconds=sub.ack_deadline_seconds),
            retention_duration=sub.message_retention_duration,
            retain_acked_messages=sub.retain_acked_messages,
        ),
    )


class PubSubClient(MessagingClient):
    """Pub/Sub client for a single project."""

    def __init__(
        self,
        project_id: str,
        publisher: PublisherAsyncClient,
        subscriber: SubscriberAsyncClient,
    ):
        self.project_id = project_id
        self._publisher = publisher
        self._subscriber = subscriber

    def _topic_path(self, topic_id: str) -> str:
        return PublisherAsyncClient.topic_path(self.project_id, topic_id)

    def _subscription_path(self, subscription_id: str) -> str:
        return SubscriberAsyncClient.subscription_path(self.project_id, subscription_id)

    def _build(
        self, subscription_id: str, config: SubscriptionConfig, topic_id: str = ""
    ) -> pubsub_types.Subscription:
        sub = pubsub_types.Subscription(
            name=self._subscription_path(subscription_id),
            ack_deadline_seconds=int(config.ack_deadline.total_seconds()),
            message_retention_duration=config.retention_duration,
            retain_acked_messages=config.retain_acked_messages,
        )
        if topic_id:
            sub.topic = self._topic_path(topic_id)
        return sub

    async def get_topic(self, topic_id: str) -> Optional[Topic]:
        try:
            await self._publisher.get_topic(topic=self._topic_path(topic_id))
        except exceptions.NotFound:
            return None
        return Topic(id=topic_id, project_id=self.project_id)

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        try:
            sub = await self._subscriber.get_subscription(
                subscription=self._subscription_path(subscription_id)
            )
        except exceptions.NotFound:
            return None
        return _to_subscription(sub)

    async def create_subscription(
        self, subscription_id: str, topic_id: str, config: SubscriptionConfig
    ) -> Subscription:
        logger.info(f"Creating Pub/Sub subscription {subscription_id} on {topic_id}")
        sub = await self._subscriber.create_subscription(
            request=self._build(subscription_id, config, topic_id)
        )
        return _to_subscription(sub)

    async def update_subscription(
        self, subscription_id: str, config: SubscriptionConfig, fields: List[str]
    ) -> Subscription:
        logger.info(
            f"Updating Pub/Sub subscription {subscription_id}: {', '.join(fields)}"
        )
        sub = await self._subscriber.update_subscription(
            request=pubsub_types.UpdateSubscriptionRequest(
                subscription=self._build(subscription_id, config),
                update_mask=field_mask_pb2.FieldMask(paths=fields),
            )
        )
        return _to_subscription(sub)

    async def delete_subscription(self, subscription_id: str) -> None:
        try:
            await self._subscriber.delete_subscription(
                subscription=self._subscription_path(subscription_id)
            )
            logger.info(f"Deleted Pub/Sub subscription {subscription_id}")
        except exceptions.NotFound:
            logger.debug(f"Pub/Sub subscription {subscription_id} already absent")

    async def close(self) -> None:
        await self._publisher.transport.close()
        await self._subscriber.transport.close()


class GCPPubSubAdmin(MessagingAdmin):
    """Messaging admin backed by Google Cloud Pub/Sub."""

    def __init__(self):
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "gcp_pubsub"

    @property
    def version(self) -> str:
        return "1.0.0"

    async def initialize(self, config: Dict[str, Any]) -> None:
        self._config = config
        logger.info("Initialized Google Cloud Pub/Sub messaging backend")

    async def create_client(self, project_id: str) -> MessagingClient:
        # google.auth.default may hit the metadata server.
        creds = await asyncio.to_thread(_get_gcp_creds, project_id)
        options = None
        if self._config.get("api_endpoint"):
            options = ClientOptions(api_endpoint=self._config["api_endpoint"])
        return PubSubClient(
            project_id,
            PublisherAsyncClient(credentials=creds, client_options=options),
            SubscriberAsyncClient(credentials=creds, client_options=options),
        )

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        return {"api_endpoint": os.environ.get("PUBSUB_API_ENDPOINT", "")}
