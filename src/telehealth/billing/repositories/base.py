"""
Repository contracts for subscription and webhook state.

Implementations must provide the atomic primitives the engine relies on:
compare-and-swap subscription saves, conditional usage increments,
idempotency-keyed billing records with status-conditional updates and
insert-if-absent webhook claims.
"""

from collections.abc import Collection
from datetime import datetime
from typing import Any, Protocol

from telehealth.billing.models import (
    BillingRecord,
    BillingStatus,
    ClaimOutcome,
    Plan,
    Subscription,
    SubscriptionStatusHistory,
    UsageRecord,
    WebhookEventRecord,
)


class SubscriptionRepository(Protocol):
    """Plans, subscriptions, usage counters, billing records and history."""

    # Plans
    async def get_plan(self, plan_id: str) -> Plan | None: ...

    async def save_plan(self, plan: Plan) -> Plan: ...

    async def list_plans(self, active_only: bool = False) -> list[Plan]: ...

    # Subscriptions
    async def get_subscription(self, subscription_id: str) -> Subscription | None: ...

    async def get_subscription_by_processor_id(
        self, processor_subscription_id: str
    ) -> Subscription | None: ...

    async def add_subscription(
        self, subscription: Subscription, history: SubscriptionStatusHistory | None = None
    ) -> Subscription: ...

    async def save_subscription(
        self,
        subscription: Subscription,
        expected_version: int,
        history: SubscriptionStatusHistory | None = None,
        reset_usage: bool = False,
    ) -> bool:
        """Persist ``subscription`` only if the stored version equals ``expected_version``.

        History is appended and usage zeroed in the same atomic step.
        """
        ...

    async def find_live_subscription(self, user_id: str, plan_id: str) -> Subscription | None: ...

    async def list_subscriptions_for_user(self, user_id: str) -> list[Subscription]: ...

    async def list_due_subscriptions(self, now: datetime) -> list[Subscription]:
        """Active or payment-paused subscriptions whose next billing date has passed."""
        ...

    async def list_status_history(self, subscription_id: str) -> list[SubscriptionStatusHistory]: ...

    # Usage
    async def get_usage(self, subscription_id: str, privilege_name: str) -> UsageRecord | None: ...

    async def list_usage(self, subscription_id: str) -> list[UsageRecord]: ...

    async def increment_usage(
        self,
        subscription_id: str,
        privilege_name: str,
        grant_id: str | None,
        amount: int,
        allowance: int,
    ) -> bool:
        """Add ``amount`` only while the result stays within ``allowance``."""
        ...

    async def reset_usage(self, subscription_id: str) -> int: ...

    # Billing records
    async def add_billing_record(self, record: BillingRecord) -> tuple[BillingRecord, bool]:
        """Insert ``record`` unless its idempotency key exists.

        Returns the stored record and whether it was created.
        """
        ...

    async def update_billing_record(self, record: BillingRecord) -> BillingRecord: ...

    async def compare_and_set_billing_record(
        self, record: BillingRecord, expected_status: BillingStatus
    ) -> bool:
        """Persist ``record`` only if the stored status equals ``expected_status``."""
        ...

    async def get_billing_record(self, record_id: str) -> BillingRecord | None: ...

    async def get_billing_record_by_key(self, idempotency_key: str) -> BillingRecord | None: ...

    async def list_billing_records(self, subscription_id: str) -> list[BillingRecord]: ...

    async def list_billing_records_by_status(
        self, statuses: Collection[BillingStatus]
    ) -> list[BillingRecord]: ...


class WebhookEventStore(Protocol):
    """Dedup store for processor event ids."""

    async def claim(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        now: datetime,
        lease_seconds: float,
    ) -> tuple[ClaimOutcome, WebhookEventRecord]:
        """Insert-if-absent; reclaims failed entries and stale in-flight ones."""
        ...

    async def record_attempt(self, event_id: str, error: str | None, now: datetime) -> None: ...

    async def mark_processed(self, event_id: str, now: datetime) -> None: ...

    async def mark_failed(self, event_id: str, error: str, now: datetime) -> None: ...

    async def get(self, event_id: str) -> WebhookEventRecord | None: ...

    async def list_failed(self) -> list[WebhookEventRecord]: ...

    async def purge_processed(self, before: datetime) -> int: ...
