"""
Entitlement ledger.

Meters plan-granted privileges (teleconsultations, medication supply, ...)
per subscription and billing cycle. Consumption is rejected, never clipped,
when it would exceed the allowance; the check and the increment happen in
one conditional update so concurrent bookings cannot overdraw.
"""

import structlog

from telehealth.billing.exceptions import PlanNotFoundError, SubscriptionNotFoundError
from telehealth.billing.locks import LockRegistry
from telehealth.billing.metrics import BillingMetrics, get_billing_metrics
from telehealth.billing.models import (
    Plan,
    PrivilegeUsage,
    Subscription,
    SubscriptionStatus,
)
from telehealth.billing.repositories import SubscriptionRepository
from telehealth.core.result import Result

logger = structlog.get_logger(__name__)

TELECONSULTATION = "Teleconsultation"
MEDICATION_SUPPLY = "MedicationSupply"


class EntitlementLedger:
    """Per-subscription usage counters against plan allowances."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        locks: LockRegistry,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.repository = repository
        self.locks = locks
        self.metrics = metrics or get_billing_metrics()

    async def remaining(self, subscription_id: str, privilege_name: str) -> int:
        """Allowance left this cycle; 0 when the plan grants no such privilege."""
        loaded = await self._load(subscription_id)
        if loaded is None:
            return 0
        _, plan = loaded
        return await self._remaining_for(subscription_id, plan, privilege_name)

    async def can_use(self, subscription_id: str, privilege_name: str) -> bool:
        loaded = await self._load(subscription_id)
        if loaded is None:
            return False
        subscription, plan = loaded
        if subscription.status is not SubscriptionStatus.ACTIVE:
            return False
        return await self._remaining_for(subscription_id, plan, privilege_name) > 0

    async def consume(self, subscription_id: str, privilege_name: str, amount: int = 1) -> bool:
        """Use ``amount`` units of a privilege.

        Fails without mutating anything when the subscription is not Active,
        the plan has no grant for the privilege, or the allowance left is
        smaller than ``amount``.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        async with self.locks.hold(subscription_id):
            loaded = await self._load(subscription_id)
            if loaded is None:
                return self._reject(subscription_id, privilege_name, "subscription_not_found")
            subscription, plan = loaded

            if subscription.status is not SubscriptionStatus.ACTIVE:
                return self._reject(subscription_id, privilege_name, f"subscription_{subscription.status.value}")

            grant = plan.grant_for(privilege_name)
            if grant is None:
                return self._reject(subscription_id, privilege_name, "not_granted")

            consumed = await self.repository.increment_usage(
                subscription_id, privilege_name, grant.id, amount, grant.allowance
            )

        if not consumed:
            return self._reject(subscription_id, privilege_name, "allowance_exhausted")

        logger.info(
            "Privilege consumed",
            subscription_id=subscription_id,
            privilege_name=privilege_name,
            amount=amount,
        )
        return True

    async def reset_for_new_cycle(self, subscription_id: str) -> int:
        """Zero every counter of the subscription. Rollover does this atomically itself."""
        async with self.locks.hold(subscription_id):
            count = await self.repository.reset_usage(subscription_id)
        logger.info("Usage reset for new cycle", subscription_id=subscription_id, counters=count)
        return count

    async def expire_unused(self, subscription_id: str) -> int:
        """Discard unused allowance at period end; no carry-over."""
        async with self.locks.hold(subscription_id):
            count = await self.repository.reset_usage(subscription_id)
        logger.info("Unused allowance discarded", subscription_id=subscription_id, counters=count)
        return count

    async def usage_summary(self, subscription_id: str) -> Result[list[PrivilegeUsage]]:
        subscription = await self.repository.get_subscription(subscription_id)
        if subscription is None:
            return Result.failure(SubscriptionNotFoundError(subscription_id))
        plan = await self.repository.get_plan(subscription.plan_id)
        if plan is None:
            return Result.failure(PlanNotFoundError(subscription.plan_id))

        used = {u.privilege_name: u.used_value for u in await self.repository.list_usage(subscription_id)}
        summary = []
        for grant in plan.grants:
            used_value = used.get(grant.privilege_name, 0)
            summary.append(
                PrivilegeUsage(
                    privilege_name=grant.privilege_name,
                    allowance=grant.allowance,
                    used=used_value,
                    remaining=max(grant.allowance - used_value, 0),
                )
            )
        return Result.success(summary)

    async def _load(self, subscription_id: str) -> tuple[Subscription, Plan] | None:
        subscription = await self.repository.get_subscription(subscription_id)
        if subscription is None:
            return None
        plan = await self.repository.get_plan(subscription.plan_id)
        if plan is None:
            logger.error(
                "Subscription references a missing plan",
                subscription_id=subscription_id,
                plan_id=subscription.plan_id,
            )
            return None
        return subscription, plan

    async def _remaining_for(self, subscription_id: str, plan: Plan, privilege_name: str) -> int:
        grant = plan.grant_for(privilege_name)
        if grant is None:
            return 0
        usage = await self.repository.get_usage(subscription_id, privilege_name)
        used = usage.used_value if usage else 0
        return max(grant.allowance - used, 0)

    def _reject(self, subscription_id: str, privilege_name: str, reason: str) -> bool:
        self.metrics.record_consumption_rejected(privilege_name, reason)
        logger.warning(
            "Privilege consumption rejected",
            subscription_id=subscription_id,
            privilege_name=privilege_name,
            reason=reason,
        )
        return False
