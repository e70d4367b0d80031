"""
Subscription state machine.

Owns subscription status and its legal transitions:

    Active -> Paused -> Active (resume)
    Active | Paused -> Cancelled   (terminal)
    Active | Paused -> Expired     (terminal)
    Active -> Active               (plan change, renewal rollover)

Each transition re-reads the subscription under its per-subscription lock,
checks the guard against the fresh state and persists with a version
compare-and-swap, retrying on conflict. A guard that no longer holds yields
a failed ``Result``; nothing is written. Status changes append history and
produce one audit record and one notification after commit.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog

from telehealth.billing.config import BillingConfig
from telehealth.billing.events import (
    AuditAction,
    EntityType,
    NotificationDispatcher,
    NotificationKind,
    record_audit,
)
from telehealth.billing.exceptions import (
    ConcurrencyConflictError,
    SamePlanError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from telehealth.billing.interfaces import AuditRecorder
from telehealth.billing.locks import LockRegistry
from telehealth.billing.metrics import BillingMetrics, get_billing_metrics
from telehealth.billing.models import (
    PauseReason,
    Plan,
    Subscription,
    SubscriptionStatus,
    SubscriptionStatusHistory,
    utcnow,
)
from telehealth.billing.repositories import SubscriptionRepository
from telehealth.core.result import Result

logger = structlog.get_logger(__name__)

# Mutation applied to a freshly read subscription. Success(None) means the
# subscription already satisfies the request and nothing is written.
Mutation = Callable[[Subscription, datetime], Result[Subscription | None]]

_STATUS_NOTIFICATIONS = {
    SubscriptionStatus.PAUSED: NotificationKind.PAUSED,
    SubscriptionStatus.ACTIVE: NotificationKind.RESUMED,
    SubscriptionStatus.CANCELLED: NotificationKind.CANCELLED,
    SubscriptionStatus.EXPIRED: NotificationKind.EXPIRED,
}


def _state_error(message: str, sub: Subscription) -> Result[Subscription | None]:
    return Result.failure(SubscriptionStateError(message, sub.id, sub.status.value))


class SubscriptionStateMachine:
    """Applies guarded, atomic status transitions to subscriptions."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        locks: LockRegistry,
        notifications: NotificationDispatcher,
        audit: AuditRecorder,
        config: BillingConfig | None = None,
        metrics: BillingMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.locks = locks
        self.notifications = notifications
        self.audit = audit
        self.config = config or BillingConfig()
        self.metrics = metrics or get_billing_metrics()
        self.clock = clock

    # ------------------------------------------------------------------
    # User-visible transitions
    # ------------------------------------------------------------------

    async def pause(
        self, subscription_id: str, actor_id: str | None = None, reason: str | None = None
    ) -> Result[Subscription]:
        def mutate(sub: Subscription, now: datetime) -> Result[Subscription | None]:
            if sub.status is SubscriptionStatus.PAUSED:
                return _state_error("Subscription is already paused", sub)
            if sub.status is SubscriptionStatus.CANCELLED:
                return _state_error("Cannot pause a cancelled subscription", sub)
            if sub.status is SubscriptionStatus.EXPIRED:
                return _state_error("Cannot pause an expired subscription", sub)
            return Result.success(
                sub.model_copy(
                    update={
                        "status": SubscriptionStatus.PAUSED,
                        "paused_date": now,
                        "pause_reason": PauseReason.USER,
                    }
                )
            )

        return await self._transition(
            subscription_id, mutate, AuditAction.SUBSCRIPTION_PAUSED, actor_id, reason
        )

    async def resume(
        self, subscription_id: str, actor_id: str | None = None
    ) -> Result[Subscription]:
        def mutate(sub: Subscription, now: datetime) -> Result[Subscription | None]:
            if sub.status is not SubscriptionStatus.PAUSED:
                return _state_error("Only paused subscriptions can be resumed", sub)
            return Result.success(self._reactivated(sub, now))

        return await self._transition(
            subscription_id, mutate, AuditAction.SUBSCRIPTION_RESUMED, actor_id, "resumed"
        )

    async def cancel(
        self,
        subscription_id: str,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> Result[Subscription]:
        def mutate(sub: Subscription, now: datetime) -> Result[Subscription | None]:
            if sub.status is SubscriptionStatus.CANCELLED:
                return _state_error("Subscription is already cancelled", sub)
            if sub.status is SubscriptionStatus.EXPIRED:
                return _state_error("Cannot cancel an expired subscription", sub)
            return Result.success(
                sub.model_copy(
                    update={
                        "status": SubscriptionStatus.CANCELLED,
                        "cancelled_date": now,
                        "cancellation_reason": reason,
                        "paused_date": None,
                        "pause_reason": None,
                        "auto_renew": False,
                    }
                )
            )

        return await self._transition(
            subscription_id, mutate, AuditAction.SUBSCRIPTION_CANCELLED, actor_id, reason
        )

    async def expire(
        self,
        subscription_id: str,
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> Result[Subscription]:
        """Terminate at period end; unused allowance is discarded."""

        def mutate(sub: Subscription, now: datetime) -> Result[Subscription | None]:
            if sub.status.is_terminal:
                return _state_error(f"Subscription is already {sub.status.value}", sub)
            return Result.success(self._expired(sub, now))

        return await self._transition(
            subscription_id,
            mutate,
            AuditAction.SUBSCRIPTION_EXPIRED,
            actor_id,
            reason or "expired",
            reset_usage=True,
        )

    async def change_plan(
        self,
        subscription_id: str,
        new_plan: Plan,
        new_price: Decimal | None = None,
        actor_id: str | None = None,
        expected_version: int | None = None,
    ) -> Result[Subscription]:
        """Move an Active subscription to ``new_plan``; usage is kept.

        ``expected_version`` pins the change to the state a proration was
        computed from.
        """

        def mutate(sub: Subscription, now: datetime) -> Result[Subscription | None]:
            if sub.plan_id == new_plan.id:
                return Result.failure(SamePlanError(sub.id, new_plan.id))
            if sub.status is not SubscriptionStatus.ACTIVE:
                return _state_error("Only active subscriptions can change plan", sub)
            if expected_version is not None and sub.version != expected_version:
                return _state_error("Subscription changed while the plan change was billed", sub)
            price = new_price if new_price is not None else new_plan.price_for(sub.billing_cycle)
            return Result.success(
                sub.model_copy(update={"plan_id": new_plan.id, "current_price": price})
            )

        return await self._transition(
            subscription_id,
            mutate,
            AuditAction.SUBSCRIPTION_PLAN_CHANGED,
            actor_id,
            f"plan changed to {new_plan.id}",
        )

    # ------------------------------------------------------------------
    # Billing-driven transitions
    # ------------------------------------------------------------------

    async def rollover(
        self, subscription_id: str, cycle_date: datetime, actor_id: str | None = None
    ) -> Result[Subscription]:
        """Advance one billing cycle after a successful recurring charge.

        Applies only while ``next_billing_date`` still equals the charged
        ``cycle_date``, so a cycle is rolled over (and usage reset) once.
        A payment-paused subscription becomes Active again.
        """

        def mutate(sub: Subscription, now: datetime) -> Result[Subscription | None]:
            if sub.status.is_terminal:
                return _state_error(f"Cannot renew a {sub.status.value} subscription", sub)
            if sub.status is SubscriptionStatus.PAUSED and sub.pause_reason is not PauseReason.PAYMENT_FAILED:
                return _state_error("Cannot renew a subscription paused by the user", sub)
            if sub.next_billing_date != cycle_date:
                return _state_error("Billing cycle was already rolled over", sub)
            base = self._reactivated(sub, now) if sub.status is SubscriptionStatus.PAUSED else sub
            return Result.success(
                base.model_copy(
                    update={
                        "next_billing_date": sub.billing_cycle.advance(sub.next_billing_date),
                        "last_billing_date": now,
                        "failed_payment_attempts": 0,
                        "last_payment_error": None,
                    }
                )
            )

        return await self._transition(
            subscription_id,
            mutate,
            AuditAction.SUBSCRIPTION_RENEWED,
            actor_id,
            "renewal",
            reset_usage=True,
        )

    async def record_payment_failure(
        self,
        subscription_id: str,
        error_message: str,
        payload: dict[str, Any] | None = None,
        cycle_date: datetime | None = None,
    ) -> Result[Subscription]:
        """Apply a failed renewal: pause on first failure, expire at the threshold.

        With ``cycle_date`` the failure only applies while that cycle is still
        the one due. Sends ``payment_failed`` as the single notification of
        this transition.
        """
        threshold = self.config.renewal.failure_threshold

        def mutate(sub: Subscription, now: datetime) -> Result[Subscription | None]:
            if sub.status.is_terminal:
                return _state_error(f"Subscription is already {sub.status.value}", sub)
            if cycle_date is not None and sub.next_billing_date != cycle_date:
                return _state_error("Billing cycle was already rolled over", sub)
            attempts = sub.failed_payment_attempts + 1
            if attempts >= threshold:
                return Result.success(
                    self._expired(sub, now).model_copy(
                        update={"failed_payment_attempts": attempts, "last_payment_error": error_message}
                    )
                )
            update: dict[str, Any] = {
                "failed_payment_attempts": attempts,
                "last_payment_error": error_message,
            }
            if sub.status is SubscriptionStatus.ACTIVE:
                update.update(
                    status=SubscriptionStatus.PAUSED,
                    paused_date=now,
                    pause_reason=PauseReason.PAYMENT_FAILED,
                )
            return Result.success(sub.model_copy(update=update))

        result = await self._transition(
            subscription_id,
            mutate,
            AuditAction.SUBSCRIPTION_PAYMENT_FAILED,
            None,
            error_message,
            reset_usage_when=lambda sub: sub.status is SubscriptionStatus.EXPIRED,
            notification_kind=NotificationKind.PAYMENT_FAILED,
            notification_payload=payload,
        )
        if result.is_success and result.unwrap().status is SubscriptionStatus.EXPIRED:
            logger.warning(
                "Subscription expired after repeated payment failures",
                subscription_id=subscription_id,
                attempts=result.unwrap().failed_payment_attempts,
            )
        return result

    async def confirm_payment(
        self, subscription_id: str, actor_id: str | None = None
    ) -> Result[Subscription]:
        """Ensure the subscription is Active after a confirmed payment.

        Idempotent: an Active subscription with no recorded failures is left
        untouched. Terminal subscriptions are not revived.
        """

        def mutate(sub: Subscription, now: datetime) -> Result[Subscription | None]:
            if sub.status.is_terminal:
                return _state_error(f"Cannot reactivate a {sub.status.value} subscription", sub)
            if sub.status is SubscriptionStatus.PAUSED:
                return Result.success(self._reactivated(sub, now))
            if sub.failed_payment_attempts or sub.last_payment_error:
                return Result.success(
                    sub.model_copy(update={"failed_payment_attempts": 0, "last_payment_error": None})
                )
            return Result.success(None)

        return await self._transition(
            subscription_id, mutate, AuditAction.SUBSCRIPTION_REACTIVATED, actor_id, "payment confirmed"
        )

    async def link_processor(
        self,
        subscription_id: str,
        processor_subscription_id: str | None = None,
        processor_customer_id: str | None = None,
    ) -> Result[Subscription]:
        """Record processor identifiers; no-op when already linked."""

        def mutate(sub: Subscription, now: datetime) -> Result[Subscription | None]:
            update: dict[str, Any] = {}
            if processor_subscription_id and sub.processor_subscription_id != processor_subscription_id:
                update["processor_subscription_id"] = processor_subscription_id
            if processor_customer_id and sub.processor_customer_id != processor_customer_id:
                update["processor_customer_id"] = processor_customer_id
            return Result.success(sub.model_copy(update=update) if update else None)

        return await self._transition(subscription_id, mutate, None, None, None)

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    @staticmethod
    def _reactivated(sub: Subscription, now: datetime) -> Subscription:
        return sub.model_copy(
            update={
                "status": SubscriptionStatus.ACTIVE,
                "paused_date": None,
                "pause_reason": None,
                "resumed_date": now,
                "failed_payment_attempts": 0,
                "last_payment_error": None,
            }
        )

    @staticmethod
    def _expired(sub: Subscription, now: datetime) -> Subscription:
        return sub.model_copy(
            update={
                "status": SubscriptionStatus.EXPIRED,
                "expired_date": now,
                "paused_date": None,
                "pause_reason": None,
                "auto_renew": False,
            }
        )

    async def _transition(
        self,
        subscription_id: str,
        mutate: Mutation,
        audit_action: str | None,
        actor_id: str | None,
        reason: str | None,
        *,
        reset_usage: bool = False,
        reset_usage_when: Callable[[Subscription], bool] | None = None,
        notification_kind: str | None = None,
        notification_payload: dict[str, Any] | None = None,
    ) -> Result[Subscription]:
        attempts = self.config.renewal.lock_conflict_retries

        for attempt in range(1, attempts + 1):
            async with self.locks.hold(subscription_id):
                current = await self.repository.get_subscription(subscription_id)
                if current is None:
                    return Result.failure(SubscriptionNotFoundError(subscription_id))

                now = self.clock()
                outcome = mutate(current, now)
                if outcome.is_failure:
                    logger.warning(
                        "Subscription transition rejected",
                        subscription_id=subscription_id,
                        status=current.status.value,
                        reason=outcome.error.message,
                    )
                    return Result.failure(outcome.error)

                changed = outcome.unwrap()
                if changed is None:
                    return Result.success(current)

                updated = changed.model_copy(update={"version": current.version + 1, "updated_at": now})
                history = None
                if updated.status is not current.status:
                    history = SubscriptionStatusHistory(
                        subscription_id=subscription_id,
                        from_status=current.status,
                        to_status=updated.status,
                        reason=reason,
                        changed_by=actor_id,
                        changed_at=now,
                    )
                zero_usage = reset_usage or bool(reset_usage_when and reset_usage_when(updated))

                saved = await self.repository.save_subscription(
                    updated,
                    expected_version=current.version,
                    history=history,
                    reset_usage=zero_usage,
                )

            if saved:
                await self._after_commit(
                    current, updated, audit_action, actor_id, reason, notification_kind, notification_payload
                )
                return Result.success(updated)

            logger.info(
                "Subscription version conflict, retrying",
                subscription_id=subscription_id,
                attempt=attempt,
            )

        logger.error(
            "Subscription transition abandoned after version conflicts",
            subscription_id=subscription_id,
            attempts=attempts,
        )
        return Result.failure(ConcurrencyConflictError(subscription_id, attempts))

    async def _after_commit(
        self,
        before: Subscription,
        after: Subscription,
        audit_action: str | None,
        actor_id: str | None,
        reason: str | None,
        notification_kind: str | None,
        notification_payload: dict[str, Any] | None,
    ) -> None:
        status_changed = after.status is not before.status
        if status_changed:
            self.metrics.record_transition(after.status.value)
            logger.info(
                "Subscription status changed",
                subscription_id=after.id,
                from_status=before.status.value,
                to_status=after.status.value,
                reason=reason,
            )

        if audit_action:
            detail: dict[str, Any] = {
                "from_status": before.status.value,
                "to_status": after.status.value,
                "plan_id": after.plan_id,
            }
            if reason:
                detail["reason"] = reason
            if before.plan_id != after.plan_id:
                detail["previous_plan_id"] = before.plan_id
            await record_audit(self.audit, actor_id, audit_action, EntityType.SUBSCRIPTION, after.id, detail)

        kind = notification_kind or (_STATUS_NOTIFICATIONS.get(after.status) if status_changed else None)
        if kind:
            payload = {
                "subscription_id": after.id,
                "plan_id": after.plan_id,
                "status": after.status.value,
                **(notification_payload or {}),
            }
            if after.status is SubscriptionStatus.CANCELLED and after.cancellation_reason:
                payload["reason"] = after.cancellation_reason
            await self.notifications.notify(after.user_id, kind, payload)
