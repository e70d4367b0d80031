"""Payment processor webhook ingestion."""

from telehealth.billing.webhooks.models import EventType, ProcessorEvent
from telehealth.billing.webhooks.reconciler import WebhookOutcome, WebhookReconciler
from telehealth.billing.webhooks.signature import StripeWebhookVerifier

__all__ = [
    "EventType",
    "ProcessorEvent",
    "StripeWebhookVerifier",
    "WebhookOutcome",
    "WebhookReconciler",
]
