"""
Parsed payment processor events.
"""

import json
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from telehealth.billing.exceptions import WebhookPayloadError
from telehealth.billing.models import SubscriptionStatus


class EventType:
    """Processor event types the reconciler acts on or acknowledges."""

    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_ACTION_REQUIRED = "invoice.payment_action_required"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"


# Processor subscription status -> local status. Statuses missing here
# (past_due, unpaid, incomplete, trialing...) are driven by invoice events.
PROCESSOR_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}


class EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict[str, Any] = Field(default_factory=dict)


class ProcessorEvent(BaseModel):
    """Signed event delivered by the payment processor."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int | None = None
    data: EventData = Field(default_factory=EventData)

    @classmethod
    def parse(cls, payload: bytes | str) -> "ProcessorEvent":
        """Parse a raw payload; raises ``WebhookPayloadError`` when malformed."""
        try:
            return cls.model_validate_json(payload)
        except ValidationError as e:
            event_id = None
            try:
                raw = json.loads(payload)
                if isinstance(raw, dict):
                    event_id = raw.get("id")
            except ValueError:
                pass
            raise WebhookPayloadError(f"Malformed webhook payload: {e.error_count()} errors", event_id) from e

    @property
    def obj(self) -> dict[str, Any]:
        return self.data.object

    @property
    def created_at(self) -> datetime | None:
        if self.created is None:
            return None
        return datetime.fromtimestamp(self.created, tz=UTC)

    @property
    def metadata(self) -> dict[str, Any]:
        metadata = self.obj.get("metadata")
        return metadata if isinstance(metadata, dict) else {}

    @property
    def processor_subscription_id(self) -> str | None:
        """Processor subscription id carried by subscription or invoice objects."""
        if self.type.startswith("customer.subscription."):
            return self.obj.get("id")
        subscription = self.obj.get("subscription")
        if isinstance(subscription, dict):
            return subscription.get("id")
        return subscription

    def require(self, key: str) -> Any:
        value = self.obj.get(key)
        if value is None or value == "":
            raise WebhookPayloadError(f"Event object is missing '{key}'", self.id)
        return value

    def minor_amount(self, key: str) -> int:
        value = self.require(key)
        if isinstance(value, bool) or not isinstance(value, int | Decimal | str):
            raise WebhookPayloadError(f"Event field '{key}' is not an amount", self.id)
        try:
            return int(value)
        except ValueError as e:
            raise WebhookPayloadError(f"Event field '{key}' is not an amount", self.id) from e
