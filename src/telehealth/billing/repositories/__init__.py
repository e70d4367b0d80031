"""Persistence for subscription billing state."""

from telehealth.billing.repositories.base import SubscriptionRepository, WebhookEventStore
from telehealth.billing.repositories.memory import (
    InMemorySubscriptionRepository,
    InMemoryWebhookEventStore,
)
from telehealth.billing.repositories.sql import (
    SqlAlchemySubscriptionRepository,
    SqlAlchemyWebhookEventStore,
)

__all__ = [
    "SubscriptionRepository",
    "WebhookEventStore",
    "InMemorySubscriptionRepository",
    "InMemoryWebhookEventStore",
    "SqlAlchemySubscriptionRepository",
    "SqlAlchemyWebhookEventStore",
]
