"""
Administrative bulk operations on subscriptions.

Each subscription is processed independently through the state machine;
one rejected subscription does not stop the rest of the batch.
"""

import structlog

from telehealth.billing.catalog import PlanCatalog
from telehealth.billing.events import AuditAction, EntityType, record_audit
from telehealth.billing.interfaces import AuditRecorder
from telehealth.billing.models import SubscriptionStatus
from telehealth.billing.repositories import SubscriptionRepository
from telehealth.billing.state_machine import SubscriptionStateMachine
from telehealth.core.result import Result

logger = structlog.get_logger(__name__)


class AdminOperations:
    """Bulk cancel and bulk plan moves for administrators."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        state_machine: SubscriptionStateMachine,
        catalog: PlanCatalog,
        audit: AuditRecorder,
    ) -> None:
        self.repository = repository
        self.state_machine = state_machine
        self.catalog = catalog
        self.audit = audit

    async def bulk_cancel(
        self,
        subscription_ids: list[str],
        admin_id: str,
        reason: str | None = None,
    ) -> int:
        """Cancel every listed subscription that is not already terminal.

        Returns the number of subscriptions cancelled.
        """
        cancelled = 0
        for subscription_id in dict.fromkeys(subscription_ids):
            result = await self.state_machine.cancel(
                subscription_id, reason=reason or "cancelled by administrator", actor_id=admin_id
            )
            if result.is_failure:
                logger.info(
                    "Bulk cancel skipped subscription",
                    subscription_id=subscription_id,
                    reason=result.error.message,
                )
                continue
            cancelled += 1
            await record_audit(
                self.audit,
                admin_id,
                AuditAction.BULK_CANCEL,
                EntityType.SUBSCRIPTION,
                subscription_id,
                {"reason": reason},
            )

        logger.info(
            "Bulk cancel completed",
            admin_id=admin_id,
            requested=len(subscription_ids),
            cancelled=cancelled,
        )
        return cancelled

    async def bulk_change_plan(
        self,
        subscription_ids: list[str],
        new_plan_id: str,
        admin_id: str,
    ) -> Result[int]:
        """Move Active subscriptions to ``new_plan_id`` without proration.

        Subscriptions that are not Active or already on the plan are left
        alone. Fails only when the target plan does not exist or is inactive.
        """
        plan_result = await self.catalog.get_active_plan(new_plan_id)
        if plan_result.is_failure:
            return Result.failure(plan_result.error)
        plan = plan_result.unwrap()

        changed = 0
        for subscription_id in dict.fromkeys(subscription_ids):
            subscription = await self.repository.get_subscription(subscription_id)
            if (
                subscription is None
                or subscription.status is not SubscriptionStatus.ACTIVE
                or subscription.plan_id == plan.id
            ):
                continue

            result = await self.state_machine.change_plan(subscription_id, plan, actor_id=admin_id)
            if result.is_failure:
                logger.info(
                    "Bulk plan change skipped subscription",
                    subscription_id=subscription_id,
                    reason=result.error.message,
                )
                continue
            changed += 1
            await record_audit(
                self.audit,
                admin_id,
                AuditAction.BULK_CHANGE_PLAN,
                EntityType.SUBSCRIPTION,
                subscription_id,
                {"previous_plan_id": subscription.plan_id, "plan_id": plan.id},
            )

        logger.info(
            "Bulk plan change completed",
            admin_id=admin_id,
            plan_id=plan.id,
            requested=len(subscription_ids),
            changed=changed,
        )
        return Result.success(changed)
