"""
Messaging Plugin Base - Abstract interface for the messaging service.

A messaging admin hands out project-scoped clients. A client manages the
topics and subscriptions of one project and must be closed after use.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from plugins.base import BackendPlugin


@dataclass(frozen=True)
class SubscriptionConfig:
    """Delivery parameters of a subscription."""

    ack_deadline: timedelta
    retention_duration: timedelta
    retain_acked_messages: bool = False

    def diff(self, other: "SubscriptionConfig") -> List[str]:
        """
        Compare against another config.

        Returns:
            Field paths (in update-mask form) whose values differ.
        """
        fields = []
        if self.ack_deadline != other.ack_deadline:
            fields.append("ack_deadline_seconds")
        if self.retention_duration != other.retention_duration:
            fields.append("message_retention_duration")
        if self.retain_acked_messages != other.retain_acked_messages:
            fields.append("retain_acked_messages")
        return fields


@dataclass
class Topic:
    """A topic as seen by the messaging service."""

    id: str
    project_id: str


@dataclass
class Subscription:
    """A subscription as seen by the messaging service."""

    id: str
    topic: str
    config: SubscriptionConfig


class MessagingClient(ABC):
    """Project-scoped handle on the messaging service."""

    @abstractmethod
    async def get_topic(self, topic_id: str) -> Optional[Topic]:
        """Fetch a topic, or None if it does not exist."""
        pass

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Fetch a subscription, or None if it does not exist."""
        pass

    @abstractmethod
    async def create_subscription(
        self, subscription_id: str, topic_id: str, config: SubscriptionConfig
    ) -> Subscription:
        pass

    @abstractmethod
    async def update_subscription(
        self, subscription_id: str, config: SubscriptionConfig, fields: List[str]
    ) -> Subscription:
        """
        Update only the listed fields of a subscription.

        Args:
            subscription_id: Subscription to update
            config: Desired parameters
            fields: Field paths as returned by SubscriptionConfig.diff()
        """
        pass

    @abstractmethod
    async def delete_subscription(self, subscription_id: str) -> None:
        """Delete a subscription. Deleting an absent subscription succeeds."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class MessagingAdmin(BackendPlugin):
    """Backend plugin that creates messaging clients."""

    @abstractmethod
    async def create_client(self, project_id: str) -> MessagingClient:
        """
        Create a client scoped to a project.

        Raises:
            Exception: Any failure to build credentials or transports.
        """
        pass
