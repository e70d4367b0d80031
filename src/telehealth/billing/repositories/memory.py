"""
In-memory repositories.

Used by tests and local tooling. Every method runs without awaiting, so each
call is atomic with respect to other coroutines on the same event loop.
Stored objects are copied on the way in and out.
"""

from collections.abc import Collection
from datetime import datetime, timedelta
from typing import Any

from telehealth.billing.models import (
    BillingRecord,
    BillingStatus,
    ClaimOutcome,
    PauseReason,
    Plan,
    Subscription,
    SubscriptionStatus,
    SubscriptionStatusHistory,
    UsageRecord,
    WebhookEventRecord,
    WebhookEventStatus,
    utcnow,
)


class InMemorySubscriptionRepository:
    """Dictionary-backed ``SubscriptionRepository``."""

    def __init__(self) -> None:
        self.plans: dict[str, Plan] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.usage: dict[tuple[str, str], UsageRecord] = {}
        self.billing_records: dict[str, BillingRecord] = {}
        self.history: list[SubscriptionStatusHistory] = []
        self._records_by_key: dict[str, str] = {}

    # Plans

    async def get_plan(self, plan_id: str) -> Plan | None:
        plan = self.plans.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    async def save_plan(self, plan: Plan) -> Plan:
        self.plans[plan.id] = plan.model_copy(deep=True)
        return plan

    async def list_plans(self, active_only: bool = False) -> list[Plan]:
        plans = [p for p in self.plans.values() if p.is_active or not active_only]
        return [p.model_copy(deep=True) for p in sorted(plans, key=lambda p: p.name)]

    # Subscriptions

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        sub = self.subscriptions.get(subscription_id)
        return sub.model_copy() if sub else None

    async def get_subscription_by_processor_id(
        self, processor_subscription_id: str
    ) -> Subscription | None:
        for sub in self.subscriptions.values():
            if sub.processor_subscription_id == processor_subscription_id:
                return sub.model_copy()
        return None

    async def add_subscription(
        self, subscription: Subscription, history: SubscriptionStatusHistory | None = None
    ) -> Subscription:
        if subscription.id in self.subscriptions:
            raise ValueError(f"Subscription {subscription.id} already exists")
        self.subscriptions[subscription.id] = subscription.model_copy()
        if history is not None:
            self.history.append(history.model_copy())
        return subscription

    async def save_subscription(
        self,
        subscription: Subscription,
        expected_version: int,
        history: SubscriptionStatusHistory | None = None,
        reset_usage: bool = False,
    ) -> bool:
        current = self.subscriptions.get(subscription.id)
        if current is None or current.version != expected_version:
            return False
        self.subscriptions[subscription.id] = subscription.model_copy()
        if history is not None:
            self.history.append(history.model_copy())
        if reset_usage:
            self._zero_usage(subscription.id)
        return True

    async def find_live_subscription(self, user_id: str, plan_id: str) -> Subscription | None:
        for sub in self.subscriptions.values():
            if sub.user_id == user_id and sub.plan_id == plan_id and sub.is_live:
                return sub.model_copy()
        return None

    async def list_subscriptions_for_user(self, user_id: str) -> list[Subscription]:
        subs = [s for s in self.subscriptions.values() if s.user_id == user_id]
        return [s.model_copy() for s in sorted(subs, key=lambda s: s.created_at)]

    async def list_due_subscriptions(self, now: datetime) -> list[Subscription]:
        due = []
        for sub in self.subscriptions.values():
            if sub.next_billing_date > now:
                continue
            if sub.status is SubscriptionStatus.ACTIVE or (
                sub.status is SubscriptionStatus.PAUSED
                and sub.pause_reason is PauseReason.PAYMENT_FAILED
            ):
                due.append(sub.model_copy())
        return sorted(due, key=lambda s: s.next_billing_date)

    async def list_status_history(self, subscription_id: str) -> list[SubscriptionStatusHistory]:
        return [h.model_copy() for h in self.history if h.subscription_id == subscription_id]

    # Usage

    async def get_usage(self, subscription_id: str, privilege_name: str) -> UsageRecord | None:
        record = self.usage.get((subscription_id, privilege_name))
        return record.model_copy() if record else None

    async def list_usage(self, subscription_id: str) -> list[UsageRecord]:
        return [r.model_copy() for (sid, _), r in self.usage.items() if sid == subscription_id]

    async def increment_usage(
        self,
        subscription_id: str,
        privilege_name: str,
        grant_id: str | None,
        amount: int,
        allowance: int,
    ) -> bool:
        key = (subscription_id, privilege_name)
        record = self.usage.get(key)
        used = record.used_value if record else 0
        if used + amount > allowance:
            return False
        if record is None:
            self.usage[key] = UsageRecord(
                subscription_id=subscription_id,
                privilege_name=privilege_name,
                grant_id=grant_id,
                used_value=amount,
            )
        else:
            self.usage[key] = record.model_copy(
                update={"used_value": used + amount, "grant_id": grant_id, "updated_at": utcnow()}
            )
        return True

    async def reset_usage(self, subscription_id: str) -> int:
        return self._zero_usage(subscription_id)

    def _zero_usage(self, subscription_id: str) -> int:
        count = 0
        for key, record in self.usage.items():
            if key[0] == subscription_id:
                self.usage[key] = record.model_copy(update={"used_value": 0, "updated_at": utcnow()})
                count += 1
        return count

    # Billing records

    async def add_billing_record(self, record: BillingRecord) -> tuple[BillingRecord, bool]:
        existing_id = self._records_by_key.get(record.idempotency_key)
        if existing_id is not None:
            return self.billing_records[existing_id].model_copy(), False
        self.billing_records[record.id] = record.model_copy()
        self._records_by_key[record.idempotency_key] = record.id
        return record, True

    async def update_billing_record(self, record: BillingRecord) -> BillingRecord:
        if record.id not in self.billing_records:
            raise KeyError(record.id)
        self.billing_records[record.id] = record.model_copy()
        return record

    async def compare_and_set_billing_record(
        self, record: BillingRecord, expected_status: BillingStatus
    ) -> bool:
        current = self.billing_records.get(record.id)
        if current is None or current.status is not expected_status:
            return False
        self.billing_records[record.id] = record.model_copy()
        return True

    async def get_billing_record(self, record_id: str) -> BillingRecord | None:
        record = self.billing_records.get(record_id)
        return record.model_copy() if record else None

    async def get_billing_record_by_key(self, idempotency_key: str) -> BillingRecord | None:
        record_id = self._records_by_key.get(idempotency_key)
        return self.billing_records[record_id].model_copy() if record_id else None

    async def list_billing_records(self, subscription_id: str) -> list[BillingRecord]:
        records = [r for r in self.billing_records.values() if r.subscription_id == subscription_id]
        return [r.model_copy() for r in sorted(records, key=lambda r: r.created_at)]

    async def list_billing_records_by_status(
        self, statuses: Collection[BillingStatus]
    ) -> list[BillingRecord]:
        records = [r for r in self.billing_records.values() if r.status in statuses]
        return [r.model_copy() for r in sorted(records, key=lambda r: r.created_at)]


class InMemoryWebhookEventStore:
    """Dictionary-backed ``WebhookEventStore``."""

    def __init__(self) -> None:
        self.events: dict[str, WebhookEventRecord] = {}

    async def claim(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        now: datetime,
        lease_seconds: float,
    ) -> tuple[ClaimOutcome, WebhookEventRecord]:
        record = self.events.get(event_id)
        if record is None:
            record = WebhookEventRecord(
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                received_at=now,
                last_attempt_at=now,
            )
            self.events[event_id] = record
            return ClaimOutcome.NEW, record.model_copy()

        if record.status is WebhookEventStatus.PROCESSED:
            return ClaimOutcome.PROCESSED, record.model_copy()

        if record.status is WebhookEventStatus.PROCESSING:
            started = record.last_attempt_at or record.received_at
            if now - started < timedelta(seconds=lease_seconds):
                return ClaimOutcome.PROCESSING, record.model_copy()

        record = record.model_copy(
            update={"status": WebhookEventStatus.PROCESSING, "last_attempt_at": now}
        )
        self.events[event_id] = record
        return ClaimOutcome.RETRY, record.model_copy()

    async def record_attempt(self, event_id: str, error: str | None, now: datetime) -> None:
        record = self.events[event_id]
        self.events[event_id] = record.model_copy(
            update={"attempts": record.attempts + 1, "last_error": error, "last_attempt_at": now}
        )

    async def mark_processed(self, event_id: str, now: datetime) -> None:
        record = self.events[event_id]
        self.events[event_id] = record.model_copy(
            update={"status": WebhookEventStatus.PROCESSED, "processed_at": now}
        )

    async def mark_failed(self, event_id: str, error: str, now: datetime) -> None:
        record = self.events[event_id]
        self.events[event_id] = record.model_copy(
            update={"status": WebhookEventStatus.FAILED, "last_error": error, "last_attempt_at": now}
        )

    async def get(self, event_id: str) -> WebhookEventRecord | None:
        record = self.events.get(event_id)
        return record.model_copy() if record else None

    async def list_failed(self) -> list[WebhookEventRecord]:
        failed = [r for r in self.events.values() if r.status is WebhookEventStatus.FAILED]
        return [r.model_copy() for r in sorted(failed, key=lambda r: r.received_at)]

    async def purge_processed(self, before: datetime) -> int:
        stale = [
            event_id
            for event_id, r in self.events.items()
            if r.status is WebhookEventStatus.PROCESSED
            and (r.processed_at or r.received_at) < before
        ]
        for event_id in stale:
            del self.events[event_id]
        return len(stale)
