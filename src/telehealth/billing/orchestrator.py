"""
Billing orchestrator.

Computes charges (first cycle, renewal, prorated plan change, retry),
calls the payment gateway and applies the outcome through the state
machine. Every charge follows the same sequence:

1. Under the subscription lock, validate and write a ``Pending`` billing
   record under a deterministic idempotency key ("claim").
2. Release the lock and call the gateway with a bounded timeout.
3. Mark the record ``Paid`` or ``Failed`` and apply the outcome through a
   state machine transition, which re-validates its guard on fresh state.

A repeated call with the same key returns the recorded outcome instead of
charging again. A timeout or any gateway exception counts as a failed
attempt; success is only ever taken from an explicit processor answer.
A cancelled charge, or a Pending claim older than its lease, is marked
``Abandoned`` and re-claimed later under the same key, so the processor
returns the outcome of the lost attempt instead of charging twice.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog

from telehealth.billing.catalog import PlanCatalog
from telehealth.billing.config import BillingConfig
from telehealth.billing.events import (
    AuditAction,
    EntityType,
    NotificationDispatcher,
    NotificationKind,
    record_audit,
)
from telehealth.billing.exceptions import (
    BillingError,
    BillingRecordNotFoundError,
    ConcurrentOperationError,
    DuplicateSubscriptionError,
    PermanentProcessorError,
    SamePlanError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    TransientProcessorError,
    ValidationError,
)
from telehealth.billing.interfaces import (
    AuditRecorder,
    ChargeResult,
    PaymentGateway,
    PaymentMethod,
)
from telehealth.billing.locks import LockRegistry
from telehealth.billing.metrics import BillingMetrics, get_billing_metrics
from telehealth.billing.models import (
    BillingCycle,
    BillingRecord,
    BillingStatus,
    BillingType,
    PauseReason,
    Subscription,
    SubscriptionStatus,
    SubscriptionStatusHistory,
    new_id,
    utcnow,
)
from telehealth.billing.money_utils import format_amount
from telehealth.billing.proration import Proration, compute_proration
from telehealth.billing.repositories import SubscriptionRepository
from telehealth.billing.state_machine import SubscriptionStateMachine
from telehealth.core.result import Result

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class RenewalSummary:
    """Counts from one due-renewal sweep."""

    renewed: int = 0
    failed: int = 0
    expired: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "renewed": self.renewed,
            "failed": self.failed,
            "expired": self.expired,
            "skipped": self.skipped,
        }


INTERRUPTED_REASON = "Charge interrupted before the payment processor answered"
STALE_CLAIM_REASON = "Charge claim expired without a processor answer"

# Added to the charge timeout when deciding a Pending claim was abandoned
CLAIM_LEASE_MARGIN_SECONDS = 60.0


def _charge_error(message: str, retryable: bool) -> BillingError:
    if retryable:
        return TransientProcessorError(message)
    return PermanentProcessorError(message)


def _claimed_at(record: BillingRecord) -> datetime:
    return record.claimed_at or record.created_at


async def list_unsettled_charges(
    repository: SubscriptionRepository, lease_seconds: float, now: datetime
) -> list[BillingRecord]:
    """Abandoned charges and Pending claims older than ``lease_seconds``.

    These have no processor answer recorded and need operator attention
    unless the next renewal or retry picks them up.
    """
    cutoff = now - timedelta(seconds=lease_seconds)
    records = await repository.list_billing_records_by_status(
        [BillingStatus.PENDING, BillingStatus.ABANDONED]
    )
    return [
        r for r in records
        if r.status is BillingStatus.ABANDONED or _claimed_at(r) <= cutoff
    ]


class BillingOrchestrator:
    """Charges subscriptions and drives the resulting transitions."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        state_machine: SubscriptionStateMachine,
        catalog: PlanCatalog,
        gateway: PaymentGateway,
        notifications: NotificationDispatcher,
        audit: AuditRecorder,
        locks: LockRegistry,
        config: BillingConfig | None = None,
        metrics: BillingMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.state_machine = state_machine
        self.catalog = catalog
        self.gateway = gateway
        self.notifications = notifications
        self.audit = audit
        self.locks = locks
        self.config = config or BillingConfig()
        self.metrics = metrics or get_billing_metrics()
        self.clock = clock

    @property
    def claim_lease_seconds(self) -> float:
        """Age after which a Pending charge claim counts as abandoned."""
        return self.config.renewal.charge_timeout_seconds + CLAIM_LEASE_MARGIN_SECONDS

    # ------------------------------------------------------------------
    # Subscription creation
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        *,
        auto_renew: bool = True,
        idempotency_key: str | None = None,
        actor_id: str | None = None,
    ) -> Result[Subscription]:
        """Charge the first cycle and create an Active subscription.

        Rejected when the plan is inactive or the user already holds an
        Active or Paused subscription to it.
        """
        plan_result = await self.catalog.get_active_plan(plan_id)
        if plan_result.is_failure:
            return Result.failure(plan_result.error)
        plan = plan_result.unwrap()

        creation_lock = f"create:{user_id}:{plan_id}"
        async with self.locks.hold(creation_lock):
            if idempotency_key:
                replay = await self._replay(idempotency_key)
                if replay is not None and replay.status is not BillingStatus.ABANDONED:
                    return await self._replay_subscription(replay)

            if await self.repository.find_live_subscription(user_id, plan_id):
                logger.warning("Duplicate subscription rejected", user_id=user_id, plan_id=plan_id)
                return Result.failure(DuplicateSubscriptionError(user_id, plan_id))

            now = self.clock()
            price = plan.price_for(billing_cycle)
            record = BillingRecord(
                subscription_id=new_id(),
                user_id=user_id,
                amount=price,
                currency=plan.currency,
                billing_type=BillingType.UPFRONT,
                due_date=now,
                description=f"{plan.name} subscription ({billing_cycle.value})",
                idempotency_key=idempotency_key or f"create:{user_id}:{plan_id}:{new_id()}",
            )
            claimed = await self._claim(record)
            if claimed.is_failure:
                return Result.failure(claimed.error)
            record = claimed.unwrap()

        record, charge = await self._charge(record)
        if not charge.succeeded:
            await self._notify_payment_failed(record)
            return Result.failure(_charge_error(record.failure_reason or "Payment failed", charge.retryable))

        async with self.locks.hold(creation_lock):
            if await self.repository.find_live_subscription(user_id, plan_id):
                logger.error(
                    "First cycle charged but a concurrent subscription exists",
                    user_id=user_id,
                    plan_id=plan_id,
                    billing_record_id=record.id,
                )
                return Result.failure(DuplicateSubscriptionError(user_id, plan_id))

            now = self.clock()
            subscription = Subscription(
                id=record.subscription_id,
                user_id=user_id,
                plan_id=plan.id,
                status=SubscriptionStatus.ACTIVE,
                billing_cycle=billing_cycle,
                current_price=price,
                currency=plan.currency,
                auto_renew=auto_renew,
                start_date=now,
                next_billing_date=billing_cycle.advance(now),
                last_billing_date=now,
                created_at=now,
                updated_at=now,
            )
            await self.repository.add_subscription(
                subscription,
                SubscriptionStatusHistory(
                    subscription_id=subscription.id,
                    from_status=None,
                    to_status=SubscriptionStatus.ACTIVE,
                    reason="created",
                    changed_by=actor_id or user_id,
                    changed_at=now,
                ),
            )

        self.metrics.record_transition(SubscriptionStatus.ACTIVE.value)
        await record_audit(
            self.audit,
            actor_id or user_id,
            AuditAction.SUBSCRIPTION_CREATED,
            EntityType.SUBSCRIPTION,
            subscription.id,
            {"plan_id": plan.id, "amount": str(price), "billing_record_id": record.id},
        )
        payload = {
            "subscription_id": subscription.id,
            "plan_id": plan.id,
            "plan_name": plan.name,
            "next_billing_date": subscription.next_billing_date.isoformat(),
            **self._amount_payload(record),
        }
        await self.notifications.notify(user_id, NotificationKind.SUBSCRIPTION_CONFIRMED, payload)
        await self.notifications.notify(user_id, NotificationKind.WELCOME, payload)
        logger.info(
            "Subscription created",
            subscription_id=subscription.id,
            user_id=user_id,
            plan_id=plan.id,
        )
        return Result.success(subscription)

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    async def renew(self, subscription_id: str, actor_id: str | None = None) -> Result[Subscription]:
        """Charge the next cycle at ``current_price`` and roll the cycle over.

        On failure the subscription is paused, or expired once the
        consecutive failure threshold is reached.
        """
        async with self.locks.hold(subscription_id):
            subscription = await self.repository.get_subscription(subscription_id)
            if subscription is None:
                return Result.failure(SubscriptionNotFoundError(subscription_id))
            if subscription.status.is_terminal:
                return Result.failure(
                    SubscriptionStateError(
                        f"Cannot renew a {subscription.status.value} subscription",
                        subscription_id,
                        subscription.status.value,
                    )
                )
            if (
                subscription.status is SubscriptionStatus.PAUSED
                and subscription.pause_reason is not PauseReason.PAYMENT_FAILED
            ):
                return Result.failure(
                    SubscriptionStateError(
                        "Cannot renew a subscription paused by the user",
                        subscription_id,
                        subscription.status.value,
                    )
                )

            cycle_date = subscription.next_billing_date
            attempt = subscription.failed_payment_attempts + 1
            key = f"renewal:{subscription_id}:{cycle_date.date().isoformat()}:{attempt}"
            replay = await self._replay(key)
            if replay is not None and replay.status is not BillingStatus.ABANDONED:
                return await self._replay_subscription(replay)

            record = BillingRecord(
                subscription_id=subscription_id,
                user_id=subscription.user_id,
                amount=subscription.current_price,
                currency=subscription.currency,
                billing_type=BillingType.RECURRING,
                due_date=cycle_date,
                description=f"Subscription renewal for cycle starting {cycle_date.date().isoformat()}",
                idempotency_key=key,
            )
            claimed = await self._claim(record)
            if claimed.is_failure:
                return Result.failure(claimed.error)
            record = claimed.unwrap()

        record, charge = await self._charge(record)

        if charge.succeeded:
            rolled = await self.state_machine.rollover(subscription_id, cycle_date, actor_id)
            if rolled.is_failure:
                return self._drift(record, rolled.error)
            await self._notify_payment_succeeded(record)
            logger.info(
                "Subscription renewed",
                subscription_id=subscription_id,
                next_billing_date=rolled.unwrap().next_billing_date.isoformat(),
            )
            return rolled

        error_message = record.failure_reason or "Payment failed"
        failed = await self.state_machine.record_payment_failure(
            subscription_id,
            error_message,
            payload={"billing_record_id": record.id, **self._amount_payload(record)},
            cycle_date=cycle_date,
        )
        if failed.is_failure:
            logger.error(
                "Renewal failure could not be applied to subscription",
                subscription_id=subscription_id,
                billing_record_id=record.id,
                error=failed.error.message,
            )
            await self._notify_payment_failed(record)
        return Result.failure(_charge_error(error_message, charge.retryable))

    async def process_due_renewals(self, now: datetime | None = None) -> RenewalSummary:
        """Renew every subscription whose next billing date has passed.

        Subscriptions with auto-renew off expire instead, discarding unused
        allowance. Payment-paused subscriptions are retried once per
        ``retry_interval_hours`` per recorded failure.
        """
        now = now or self.clock()
        summary = RenewalSummary()
        retry_interval = timedelta(hours=self.config.renewal.retry_interval_hours)

        for subscription in await self.repository.list_due_subscriptions(now):
            if not subscription.auto_renew:
                expired = await self.state_machine.expire(
                    subscription.id, reason="auto-renew disabled"
                )
                if expired.is_success:
                    summary.expired += 1
                else:
                    summary.skipped += 1
                continue

            if subscription.status is SubscriptionStatus.PAUSED and subscription.paused_date:
                retry_at = subscription.paused_date + retry_interval * subscription.failed_payment_attempts
                if now < retry_at:
                    summary.skipped += 1
                    continue

            try:
                result = await self.renew(subscription.id)
            except Exception:
                logger.exception("Renewal raised unexpectedly", subscription_id=subscription.id)
                summary.skipped += 1
                continue

            if result.is_success:
                summary.renewed += 1
            elif isinstance(result.error, (TransientProcessorError, PermanentProcessorError)):
                summary.failed += 1
            else:
                summary.skipped += 1

        logger.info("Due renewals processed", **summary.to_dict())
        return summary

    # ------------------------------------------------------------------
    # Plan change
    # ------------------------------------------------------------------

    async def preview_proration(self, subscription_id: str, new_plan_id: str) -> Result[Proration]:
        subscription = await self.repository.get_subscription(subscription_id)
        if subscription is None:
            return Result.failure(SubscriptionNotFoundError(subscription_id))
        plan_result = await self.catalog.get_plan(new_plan_id)
        if plan_result.is_failure:
            return Result.failure(plan_result.error)
        new_plan = plan_result.unwrap()
        return Result.success(
            compute_proration(subscription, new_plan.price_for(subscription.billing_cycle), self.clock())
        )

    async def prorated_upgrade(
        self, subscription_id: str, new_plan_id: str, actor_id: str | None = None
    ) -> Result[Subscription]:
        """Change plan mid-cycle, charging the prorated difference.

        All-or-nothing: the plan only changes once the difference is paid.
        A non-positive difference is recorded as a credit without calling
        the gateway.
        """
        async with self.locks.hold(subscription_id):
            subscription = await self.repository.get_subscription(subscription_id)
            if subscription is None:
                return Result.failure(SubscriptionNotFoundError(subscription_id))
            if subscription.plan_id == new_plan_id:
                return Result.failure(SamePlanError(subscription_id, new_plan_id))
            plan_result = await self.catalog.get_active_plan(new_plan_id)
            if plan_result.is_failure:
                return Result.failure(plan_result.error)
            new_plan = plan_result.unwrap()
            if subscription.status is not SubscriptionStatus.ACTIVE:
                return Result.failure(
                    SubscriptionStateError(
                        "Only active subscriptions can change plan",
                        subscription_id,
                        subscription.status.value,
                    )
                )

            version = subscription.version
            key = f"upgrade:{subscription_id}:{new_plan.id}:{version}"
            replay = await self._replay(key)
            if replay is not None and replay.status is not BillingStatus.ABANDONED:
                return await self._replay_subscription(replay)

            proration = compute_proration(
                subscription, new_plan.price_for(subscription.billing_cycle), self.clock()
            )
            record = BillingRecord(
                subscription_id=subscription_id,
                user_id=subscription.user_id,
                amount=proration.charge,
                currency=subscription.currency,
                billing_type=BillingType.PRORATION if proration.requires_payment else BillingType.CREDIT,
                due_date=self.clock(),
                description=(
                    f"Plan change to {new_plan.name}: {proration.days_remaining}/"
                    f"{proration.days_in_cycle} days, credit {proration.credit}"
                ),
                idempotency_key=key,
            )
            claimed = await self._claim(record)
            if claimed.is_failure:
                return Result.failure(claimed.error)
            record = claimed.unwrap()

        logger.info(
            "Plan change prorated",
            subscription_id=subscription_id,
            new_plan_id=new_plan.id,
            credit=str(proration.credit),
            charge=str(record.amount),
        )

        if record.billing_type is BillingType.CREDIT:
            changed = await self.state_machine.change_plan(
                subscription_id, new_plan, proration.new_price, actor_id, expected_version=version
            )
            now = self.clock()
            if changed.is_failure:
                await self.repository.update_billing_record(
                    record.model_copy(
                        update={"status": BillingStatus.FAILED, "failure_reason": changed.error.message}
                    )
                )
                return Result.failure(changed.error)
            await self.repository.update_billing_record(
                record.model_copy(update={"status": BillingStatus.PAID, "paid_date": now})
            )
            return changed

        record, charge = await self._charge(record)
        if not charge.succeeded:
            await self._notify_payment_failed(record)
            return Result.failure(_charge_error(record.failure_reason or "Payment failed", charge.retryable))

        changed = await self.state_machine.change_plan(
            subscription_id, new_plan, proration.new_price, actor_id, expected_version=version
        )
        if changed.is_failure:
            return self._drift(record, changed.error)
        await self._notify_payment_succeeded(record)
        return changed

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def retry_payment(
        self, billing_record_id: str, actor_id: str | None = None
    ) -> Result[BillingRecord]:
        """Re-attempt a failed charge.

        Success reactivates a payment-paused subscription, rolling the cycle
        over when the failed charge was for the cycle still due. Failure
        leaves subscription state unchanged.
        """
        original = await self.repository.get_billing_record(billing_record_id)
        if original is None:
            return Result.failure(BillingRecordNotFoundError(billing_record_id))
        if original.status is not BillingStatus.FAILED:
            return Result.failure(
                ValidationError(
                    "Only failed billing records can be retried",
                    context={"billing_record_id": billing_record_id, "status": original.status.value},
                )
            )

        subscription_id = original.subscription_id
        async with self.locks.hold(subscription_id):
            subscription = await self.repository.get_subscription(subscription_id)
            if subscription is None:
                return Result.failure(SubscriptionNotFoundError(subscription_id))
            if subscription.status.is_terminal:
                return Result.failure(
                    SubscriptionStateError(
                        f"Cannot retry payment for a {subscription.status.value} subscription",
                        subscription_id,
                        subscription.status.value,
                    )
                )

            previous = [
                await self._expire_claim(r)
                for r in await self.repository.list_billing_records(subscription_id)
                if r.retry_of == original.id
            ]
            pending = next((r for r in previous if r.status is BillingStatus.PENDING), None)
            if pending is not None:
                return Result.failure(ConcurrentOperationError(pending.idempotency_key))
            paid = next((r for r in previous if r.status is BillingStatus.PAID), None)
            if paid is not None:
                return Result.success(paid)
            abandoned = next((r for r in previous if r.status is BillingStatus.ABANDONED), None)
            if abandoned is not None:
                key = abandoned.idempotency_key
            else:
                key = f"retry:{original.id}:{len(previous) + 1}"

            record = BillingRecord(
                subscription_id=subscription_id,
                user_id=original.user_id,
                amount=original.amount,
                currency=original.currency,
                billing_type=BillingType.RETRY,
                due_date=original.due_date,
                description=f"Retry of {original.description or original.id}",
                idempotency_key=key,
                retry_of=original.id,
            )
            claimed = await self._claim(record)
            if claimed.is_failure:
                return Result.failure(claimed.error)
            record = claimed.unwrap()
            renews_cycle = (
                original.billing_type in (BillingType.RECURRING, BillingType.RETRY)
                and original.due_date == subscription.next_billing_date
            )

        record, charge = await self._charge(record)
        if not charge.succeeded:
            await self._notify_payment_failed(record)
            return Result.failure(_charge_error(record.failure_reason or "Payment failed", charge.retryable))

        if renews_cycle:
            applied = await self.state_machine.rollover(subscription_id, original.due_date, actor_id)
        else:
            applied = await self.state_machine.confirm_payment(subscription_id, actor_id)
        if applied.is_failure:
            drift = self._drift(record, applied.error)
            return Result.failure(drift.error)

        await self._notify_payment_succeeded(record)
        return Result.success(record)

    # ------------------------------------------------------------------
    # Processor-reported outcomes (webhook path)
    # ------------------------------------------------------------------

    async def apply_processor_payment(
        self,
        subscription: Subscription,
        invoice_id: str,
        amount: Decimal,
        currency: str,
        transaction_id: str | None = None,
    ) -> Result[BillingRecord]:
        """Record a processor-confirmed payment keyed by invoice id and ensure Active."""
        now = self.clock()
        record, created = await self.repository.add_billing_record(
            BillingRecord(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=amount,
                currency=currency,
                status=BillingStatus.PAID,
                billing_type=BillingType.PROCESSOR_INVOICE,
                due_date=now,
                paid_date=now,
                description=f"Processor invoice {invoice_id}",
                idempotency_key=invoice_id,
                transaction_id=transaction_id,
            )
        )
        if not created:
            logger.info("Invoice payment already recorded", invoice_id=invoice_id, billing_record_id=record.id)
            return Result.success(record)

        self.metrics.record_charge("succeeded", BillingType.PROCESSOR_INVOICE.value, currency)
        confirmed = await self.state_machine.confirm_payment(subscription.id)
        if confirmed.is_failure:
            logger.warning(
                "Invoice paid for a subscription that cannot be reactivated",
                subscription_id=subscription.id,
                invoice_id=invoice_id,
                error=confirmed.error.message,
            )
        await self._notify_payment_succeeded(record)
        return Result.success(record)

    async def apply_processor_failure(
        self,
        subscription: Subscription,
        invoice_id: str,
        attempt_count: int,
        amount: Decimal,
        currency: str,
        reason: str,
    ) -> Result[BillingRecord]:
        """Record a processor-reported payment failure and run the failure transition.

        A failure that arrives after the same invoice was recorded as paid is
        kept for the ledger but does not pause the subscription.
        """
        now = self.clock()
        idempotency_key = f"{invoice_id}:failed:{attempt_count}"
        record, created = await self.repository.add_billing_record(
            BillingRecord(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=amount,
                currency=currency,
                status=BillingStatus.FAILED,
                billing_type=BillingType.PROCESSOR_INVOICE,
                due_date=now,
                description=f"Processor invoice {invoice_id} attempt {attempt_count}",
                idempotency_key=idempotency_key,
                failure_reason=reason,
            )
        )
        if not created:
            logger.info("Invoice failure already recorded", idempotency_key=idempotency_key)
            return Result.success(record)

        self.metrics.record_charge("failed", BillingType.PROCESSOR_INVOICE.value, currency)
        settled = await self.repository.get_billing_record_by_key(invoice_id)
        if settled is not None and settled.status is BillingStatus.PAID:
            logger.info(
                "Invoice failure arrived after payment; subscription unchanged",
                subscription_id=subscription.id,
                invoice_id=invoice_id,
                attempt_count=attempt_count,
            )
            return Result.success(record)

        failed = await self.state_machine.record_payment_failure(
            subscription.id,
            reason,
            payload={"billing_record_id": record.id, **self._amount_payload(record)},
        )
        if failed.is_failure:
            logger.warning(
                "Invoice failure for a subscription that is no longer live",
                subscription_id=subscription.id,
                error=failed.error.message,
            )
            await self._notify_payment_failed(record)
        return Result.success(record)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def billing_history(self, subscription_id: str) -> Result[list[BillingRecord]]:
        if await self.repository.get_subscription(subscription_id) is None:
            return Result.failure(SubscriptionNotFoundError(subscription_id))
        return Result.success(await self.repository.list_billing_records(subscription_id))

    async def user_subscriptions(self, user_id: str) -> Result[list[Subscription]]:
        return Result.success(await self.repository.list_subscriptions_for_user(user_id))

    async def status_history(self, subscription_id: str) -> Result[list[SubscriptionStatusHistory]]:
        """Status transitions of a subscription, oldest first."""
        if await self.repository.get_subscription(subscription_id) is None:
            return Result.failure(SubscriptionNotFoundError(subscription_id))
        return Result.success(await self.repository.list_status_history(subscription_id))

    async def unsettled_charges(self, now: datetime | None = None) -> list[BillingRecord]:
        return await list_unsettled_charges(
            self.repository, self.claim_lease_seconds, now or self.clock()
        )

    async def list_payment_methods(self, user_id: str) -> Result[list[PaymentMethod]]:
        try:
            methods = await asyncio.wait_for(
                self.gateway.list_payment_methods(user_id),
                timeout=self.config.renewal.charge_timeout_seconds,
            )
        except TimeoutError:
            return Result.failure(TransientProcessorError("Payment processor timed out"))
        except BillingError as e:
            return Result.failure(e)
        except Exception as e:
            logger.warning("Listing payment methods failed", user_id=user_id, error=str(e))
            return Result.failure(TransientProcessorError(str(e)))
        return Result.success(methods)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _claim(self, record: BillingRecord) -> Result[BillingRecord]:
        now = self.clock()
        stored, created = await self.repository.add_billing_record(
            record.model_copy(update={"claimed_at": now})
        )
        if created:
            return Result.success(stored)
        if stored.status is BillingStatus.PENDING:
            return Result.failure(ConcurrentOperationError(record.idempotency_key))
        if stored.status is BillingStatus.ABANDONED:
            # Same key again, so the processor collapses it with the lost attempt
            reclaimed = stored.model_copy(
                update={"status": BillingStatus.PENDING, "claimed_at": now, "failure_reason": None}
            )
            if not await self.repository.compare_and_set_billing_record(
                reclaimed, BillingStatus.ABANDONED
            ):
                return Result.failure(ConcurrentOperationError(record.idempotency_key))
            logger.info(
                "Abandoned charge reclaimed",
                billing_record_id=stored.id,
                idempotency_key=stored.idempotency_key,
            )
            return Result.success(reclaimed)
        # Settled under the same key by a racing caller
        return Result.failure(
            SubscriptionStateError("Operation already completed", record.subscription_id)
        )

    async def _replay(self, key: str) -> BillingRecord | None:
        """Existing record for ``key``, or None when the key is unused.

        A Pending claim older than the lease is marked Abandoned first.
        """
        record = await self.repository.get_billing_record_by_key(key)
        if record is None:
            return None
        return await self._expire_claim(record)

    async def _expire_claim(self, record: BillingRecord) -> BillingRecord:
        if record.status is not BillingStatus.PENDING:
            return record
        cutoff = self.clock() - timedelta(seconds=self.claim_lease_seconds)
        if _claimed_at(record) > cutoff:
            return record
        return await self._abandon(record, STALE_CLAIM_REASON)

    async def _abandon(self, record: BillingRecord, reason: str) -> BillingRecord:
        """Settle a Pending claim that will never see a processor answer."""
        abandoned = record.model_copy(
            update={"status": BillingStatus.ABANDONED, "failure_reason": reason}
        )
        if not await self.repository.compare_and_set_billing_record(abandoned, BillingStatus.PENDING):
            current = await self.repository.get_billing_record(record.id)
            return current or record
        logger.error(
            "Charge claim abandoned",
            billing_record_id=record.id,
            subscription_id=record.subscription_id,
            idempotency_key=record.idempotency_key,
            reason=reason,
        )
        self.metrics.record_charge(
            BillingStatus.ABANDONED.value, record.billing_type.value, record.currency
        )
        return abandoned

    async def _replay_subscription(self, record: BillingRecord) -> Result[Subscription]:
        if record.status is BillingStatus.PENDING:
            return Result.failure(ConcurrentOperationError(record.idempotency_key))
        if record.status is BillingStatus.FAILED:
            return Result.failure(
                _charge_error(record.failure_reason or "Payment failed", retryable=False)
            )
        subscription = await self.repository.get_subscription(record.subscription_id)
        if subscription is None:
            return Result.failure(SubscriptionNotFoundError(record.subscription_id))
        logger.info(
            "Idempotent replay returned recorded outcome",
            idempotency_key=record.idempotency_key,
            subscription_id=subscription.id,
        )
        return Result.success(subscription)

    async def _charge(self, record: BillingRecord) -> tuple[BillingRecord, ChargeResult]:
        """Call the gateway for a claimed record and persist the outcome."""
        billing_type = record.billing_type.value
        try:
            with self.metrics.time_charge(billing_type):
                charge = await asyncio.wait_for(
                    self.gateway.charge(
                        record.user_id,
                        record.amount,
                        record.currency,
                        idempotency_key=record.idempotency_key,
                        description=record.description,
                    ),
                    timeout=self.config.renewal.charge_timeout_seconds,
                )
        except asyncio.CancelledError:
            await self._abandon(record, INTERRUPTED_REASON)
            raise
        except TimeoutError:
            charge = ChargeResult.declined("Payment processor timed out", retryable=True)
        except TransientProcessorError as e:
            charge = ChargeResult.declined(e.message, retryable=True)
        except PermanentProcessorError as e:
            charge = ChargeResult.declined(e.message)
        except Exception as e:
            logger.warning(
                "Payment gateway raised",
                billing_record_id=record.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            charge = ChargeResult.declined(str(e) or type(e).__name__, retryable=True)

        now = self.clock()
        if charge.succeeded:
            record = record.model_copy(
                update={
                    "status": BillingStatus.PAID,
                    "paid_date": now,
                    "transaction_id": charge.transaction_id,
                }
            )
            logger.info(
                "Charge succeeded",
                billing_record_id=record.id,
                subscription_id=record.subscription_id,
                amount=str(record.amount),
            )
        else:
            record = record.model_copy(
                update={
                    "status": BillingStatus.FAILED,
                    "failure_reason": charge.error_message or "Payment failed",
                }
            )
            logger.warning(
                "Charge failed",
                billing_record_id=record.id,
                subscription_id=record.subscription_id,
                reason=record.failure_reason,
                retryable=charge.retryable,
            )

        self.metrics.record_charge(charge.status.value, billing_type, record.currency)
        await self.repository.update_billing_record(record)
        return record, charge

    def _drift(self, record: BillingRecord, error: BillingError) -> Result[Subscription]:
        """Charge succeeded but the subscription moved on meanwhile."""
        logger.error(
            "Charge succeeded but outcome could not be applied",
            billing_record_id=record.id,
            subscription_id=record.subscription_id,
            error=error.message,
        )
        return Result.failure(
            SubscriptionStateError(
                f"Payment recorded but not applied: {error.message}", record.subscription_id
            )
        )

    def _amount_payload(self, record: BillingRecord) -> dict[str, Any]:
        return {
            "amount": str(record.amount),
            "currency": record.currency,
            "formatted_amount": format_amount(record.amount, record.currency),
        }

    async def _notify_payment_succeeded(self, record: BillingRecord) -> None:
        await self.notifications.notify(
            record.user_id,
            NotificationKind.PAYMENT_SUCCEEDED,
            {
                "subscription_id": record.subscription_id,
                "billing_record_id": record.id,
                **self._amount_payload(record),
            },
        )

    async def _notify_payment_failed(self, record: BillingRecord) -> None:
        await self.notifications.notify(
            record.user_id,
            NotificationKind.PAYMENT_FAILED,
            {
                "subscription_id": record.subscription_id,
                "billing_record_id": record.id,
                "reason": record.failure_reason,
                **self._amount_payload(record),
            },
        )
