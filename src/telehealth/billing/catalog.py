"""
Plan catalog.

Read-mostly plan definitions with admin-gated, audited changes.
Deactivating a plan blocks new subscriptions but leaves existing ones alone.
"""

from decimal import Decimal
from typing import Any

import structlog

from telehealth.billing.events import AuditAction, EntityType, record_audit
from telehealth.billing.exceptions import PlanInactiveError, PlanNotFoundError, ValidationError
from telehealth.billing.interfaces import AuditRecorder
from telehealth.billing.models import Plan, PrivilegeGrant, utcnow
from telehealth.billing.repositories import SubscriptionRepository
from telehealth.core.result import Result

logger = structlog.get_logger(__name__)

_UPDATABLE_FIELDS = {
    "name",
    "description",
    "monthly_price",
    "quarterly_price",
    "annual_price",
    "grants",
}


class PlanCatalog:
    """Plan lookup and administration."""

    def __init__(self, repository: SubscriptionRepository, audit: AuditRecorder) -> None:
        self.repository = repository
        self.audit = audit

    async def get_plan(self, plan_id: str) -> Result[Plan]:
        plan = await self.repository.get_plan(plan_id)
        if plan is None:
            return Result.failure(PlanNotFoundError(plan_id))
        return Result.success(plan)

    async def get_active_plan(self, plan_id: str) -> Result[Plan]:
        """Plan that accepts new subscriptions."""
        result = await self.get_plan(plan_id)
        if result.is_success and not result.unwrap().is_active:
            return Result.failure(PlanInactiveError(plan_id))
        return result

    async def list_active_plans(self) -> list[Plan]:
        return await self.repository.list_plans(active_only=True)

    async def create_plan(
        self,
        admin_id: str,
        name: str,
        monthly_price: Decimal,
        grants: list[PrivilegeGrant] | None = None,
        *,
        currency: str = "USD",
        description: str | None = None,
        quarterly_price: Decimal | None = None,
        annual_price: Decimal | None = None,
    ) -> Result[Plan]:
        grants = grants or []
        names = [g.privilege_name for g in grants]
        if len(names) != len(set(names)):
            return Result.failure(
                ValidationError("Privilege names must be unique within a plan", context={"name": name})
            )

        plan = Plan(
            name=name,
            description=description,
            monthly_price=monthly_price,
            quarterly_price=quarterly_price,
            annual_price=annual_price,
            currency=currency,
            grants=grants,
        )
        await self.repository.save_plan(plan)
        await record_audit(
            self.audit,
            admin_id,
            AuditAction.PLAN_CREATED,
            EntityType.PLAN,
            plan.id,
            {"name": plan.name, "monthly_price": str(plan.monthly_price)},
        )
        logger.info("Plan created", plan_id=plan.id, name=plan.name)
        return Result.success(plan)

    async def update_plan(self, plan_id: str, admin_id: str, **changes: Any) -> Result[Plan]:
        """Admin-gated plan update.

        Existing subscriptions keep their ``current_price`` until their next
        plan change; grant changes apply to allowance checks immediately.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            return Result.failure(
                ValidationError(
                    "Unsupported plan fields", context={"fields": sorted(unknown)}
                )
            )

        current = await self.get_plan(plan_id)
        if current.is_failure:
            return current

        plan = current.unwrap()
        updated = Plan.model_validate(
            {**plan.model_dump(), **changes, "updated_at": utcnow()}
        )
        await self.repository.save_plan(updated)
        await record_audit(
            self.audit,
            admin_id,
            AuditAction.PLAN_UPDATED,
            EntityType.PLAN,
            plan_id,
            {"fields": sorted(changes)},
        )
        logger.info("Plan updated", plan_id=plan_id, fields=sorted(changes))
        return Result.success(updated)

    async def activate_plan(self, plan_id: str, admin_id: str) -> Result[Plan]:
        return await self._set_active(plan_id, admin_id, True)

    async def deactivate_plan(self, plan_id: str, admin_id: str) -> Result[Plan]:
        return await self._set_active(plan_id, admin_id, False)

    async def _set_active(self, plan_id: str, admin_id: str, active: bool) -> Result[Plan]:
        current = await self.get_plan(plan_id)
        if current.is_failure:
            return current

        plan = current.unwrap()
        if plan.is_active == active:
            return Result.success(plan)

        updated = plan.model_copy(update={"is_active": active, "updated_at": utcnow()})
        await self.repository.save_plan(updated)
        await record_audit(
            self.audit,
            admin_id,
            AuditAction.PLAN_ACTIVATED if active else AuditAction.PLAN_DEACTIVATED,
            EntityType.PLAN,
            plan_id,
            {"name": plan.name},
        )
        logger.info("Plan availability changed", plan_id=plan_id, is_active=active)
        return Result.success(updated)
