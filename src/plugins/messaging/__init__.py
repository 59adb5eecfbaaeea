"""Messaging service backends."""

from plugins.messaging.base import (
    MessagingAdmin,
    MessagingClient,
    Subscription,
    SubscriptionConfig,
    Topic,
)

__all__ = [
    "MessagingAdmin",
    "MessagingClient",
    "Subscription",
    "SubscriptionConfig",
    "Topic",
]
