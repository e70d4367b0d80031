"""
SQLAlchemy repositories over async sessions.

Each public method runs in its own transaction. Atomic primitives are
expressed as conditional UPDATEs (version compare-and-swap, bounded usage
increment, dedup reclaim) or as inserts guarded by unique constraints.
"""

from collections.abc import Collection
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from telehealth.billing.entities import (
    BillingRecordTable,
    PlanPrivilegeTable,
    PlanTable,
    SubscriptionStatusHistoryTable,
    SubscriptionTable,
    UsageRecordTable,
    WebhookEventTable,
)
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
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)


def _column_values(model: BaseModel, exclude: set[str] | None = None) -> dict[str, Any]:
    """Dump a domain model into column values, flattening enums."""
    values = model.model_dump(exclude=exclude)
    return {k: v.value if isinstance(v, Enum) else v for k, v in values.items()}


class SqlAlchemySubscriptionRepository:
    """``SubscriptionRepository`` backed by SQLAlchemy."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    # Plans

    async def get_plan(self, plan_id: str) -> Plan | None:
        async with self.session_maker() as session:
            row = await session.get(PlanTable, plan_id)
            return Plan.model_validate(row) if row else None

    async def save_plan(self, plan: Plan) -> Plan:
        async with self.session_maker() as session, session.begin():
            row = await session.get(PlanTable, plan.id)
            values = _column_values(plan, exclude={"grants"})
            if row is None:
                row = PlanTable(**values)
                session.add(row)
            else:
                for key, value in values.items():
                    setattr(row, key, value)
                # Drop old grants first so re-added names do not collide
                row.grants.clear()
                await session.flush()
            row.grants.extend(
                PlanPrivilegeTable(plan_id=plan.id, **_column_values(grant))
                for grant in plan.grants
            )
        return plan

    async def list_plans(self, active_only: bool = False) -> list[Plan]:
        stmt = select(PlanTable).order_by(PlanTable.name)
        if active_only:
            stmt = stmt.where(PlanTable.is_active.is_(True))
        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Plan.model_validate(row) for row in rows]

    # Subscriptions

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        async with self.session_maker() as session:
            row = await session.get(SubscriptionTable, subscription_id)
            return Subscription.model_validate(row) if row else None

    async def get_subscription_by_processor_id(
        self, processor_subscription_id: str
    ) -> Subscription | None:
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.processor_subscription_id == processor_subscription_id
        )
        async with self.session_maker() as session:
            row = (await session.execute(stmt)).scalars().first()
            return Subscription.model_validate(row) if row else None

    async def add_subscription(
        self, subscription: Subscription, history: SubscriptionStatusHistory | None = None
    ) -> Subscription:
        async with self.session_maker() as session, session.begin():
            session.add(SubscriptionTable(**_column_values(subscription)))
            if history is not None:
                # Parent row must exist before the history row references it
                await session.flush()
                session.add(SubscriptionStatusHistoryTable(**_column_values(history)))
        return subscription

    async def save_subscription(
        self,
        subscription: Subscription,
        expected_version: int,
        history: SubscriptionStatusHistory | None = None,
        reset_usage: bool = False,
    ) -> bool:
        values = _column_values(subscription, exclude={"id", "created_at"})
        stmt = (
            update(SubscriptionTable)
            .where(
                SubscriptionTable.id == subscription.id,
                SubscriptionTable.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self.session_maker() as session, session.begin():
            result = await session.execute(stmt)
            if result.rowcount != 1:
                return False
            if history is not None:
                session.add(SubscriptionStatusHistoryTable(**_column_values(history)))
            if reset_usage:
                await session.execute(self._zero_usage_stmt(subscription.id))
        return True

    async def find_live_subscription(self, user_id: str, plan_id: str) -> Subscription | None:
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.user_id == user_id,
            SubscriptionTable.plan_id == plan_id,
            SubscriptionTable.status.in_(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAUSED.value]
            ),
        )
        async with self.session_maker() as session:
            row = (await session.execute(stmt)).scalars().first()
            return Subscription.model_validate(row) if row else None

    async def list_subscriptions_for_user(self, user_id: str) -> list[Subscription]:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.user_id == user_id)
            .order_by(SubscriptionTable.created_at)
        )
        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Subscription.model_validate(row) for row in rows]

    async def list_due_subscriptions(self, now: datetime) -> list[Subscription]:
        stmt = (
            select(SubscriptionTable)
            .where(
                SubscriptionTable.next_billing_date <= now,
                or_(
                    SubscriptionTable.status == SubscriptionStatus.ACTIVE.value,
                    and_(
                        SubscriptionTable.status == SubscriptionStatus.PAUSED.value,
                        SubscriptionTable.pause_reason == PauseReason.PAYMENT_FAILED.value,
                    ),
                ),
            )
            .order_by(SubscriptionTable.next_billing_date)
        )
        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Subscription.model_validate(row) for row in rows]

    async def list_status_history(self, subscription_id: str) -> list[SubscriptionStatusHistory]:
        stmt = (
            select(SubscriptionStatusHistoryTable)
            .where(SubscriptionStatusHistoryTable.subscription_id == subscription_id)
            .order_by(SubscriptionStatusHistoryTable.changed_at)
        )
        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [SubscriptionStatusHistory.model_validate(row) for row in rows]

    # Usage

    async def get_usage(self, subscription_id: str, privilege_name: str) -> UsageRecord | None:
        stmt = select(UsageRecordTable).where(
            UsageRecordTable.subscription_id == subscription_id,
            UsageRecordTable.privilege_name == privilege_name,
        )
        async with self.session_maker() as session:
            row = (await session.execute(stmt)).scalars().first()
            return UsageRecord.model_validate(row) if row else None

    async def list_usage(self, subscription_id: str) -> list[UsageRecord]:
        stmt = select(UsageRecordTable).where(UsageRecordTable.subscription_id == subscription_id)
        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [UsageRecord.model_validate(row) for row in rows]

    async def increment_usage(
        self,
        subscription_id: str,
        privilege_name: str,
        grant_id: str | None,
        amount: int,
        allowance: int,
    ) -> bool:
        bounded_update = (
            update(UsageRecordTable)
            .where(
                UsageRecordTable.subscription_id == subscription_id,
                UsageRecordTable.privilege_name == privilege_name,
                UsageRecordTable.used_value + amount <= allowance,
            )
            .values(
                used_value=UsageRecordTable.used_value + amount,
                grant_id=grant_id,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        # Two rounds: the first insert may race with a concurrent first use
        for _ in range(2):
            async with self.session_maker() as session, session.begin():
                result = await session.execute(bounded_update)
                if result.rowcount == 1:
                    return True
                exists = await session.execute(
                    select(UsageRecordTable.id).where(
                        UsageRecordTable.subscription_id == subscription_id,
                        UsageRecordTable.privilege_name == privilege_name,
                    )
                )
                if exists.first() is not None:
                    return False
            if amount > allowance:
                return False
            try:
                async with self.session_maker() as session, session.begin():
                    session.add(
                        UsageRecordTable(
                            id=new_id(),
                            subscription_id=subscription_id,
                            privilege_name=privilege_name,
                            grant_id=grant_id,
                            used_value=amount,
                            updated_at=utcnow(),
                        )
                    )
                return True
            except IntegrityError:
                logger.debug(
                    "Usage row created concurrently, retrying bounded update",
                    subscription_id=subscription_id,
                    privilege_name=privilege_name,
                )
        return False

    async def reset_usage(self, subscription_id: str) -> int:
        async with self.session_maker() as session, session.begin():
            result = await session.execute(self._zero_usage_stmt(subscription_id))
            return result.rowcount or 0

    @staticmethod
    def _zero_usage_stmt(subscription_id: str) -> Any:
        return (
            update(UsageRecordTable)
            .where(UsageRecordTable.subscription_id == subscription_id)
            .values(used_value=0, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    # Billing records

    async def add_billing_record(self, record: BillingRecord) -> tuple[BillingRecord, bool]:
        try:
            async with self.session_maker() as session, session.begin():
                session.add(BillingRecordTable(**_column_values(record)))
            return record, True
        except IntegrityError:
            existing = await self.get_billing_record_by_key(record.idempotency_key)
            if existing is None:
                raise
            return existing, False

    async def update_billing_record(self, record: BillingRecord) -> BillingRecord:
        async with self.session_maker() as session, session.begin():
            row = await session.get(BillingRecordTable, record.id)
            if row is None:
                raise KeyError(record.id)
            for key, value in _column_values(record, exclude={"id"}).items():
                setattr(row, key, value)
        return record

    async def compare_and_set_billing_record(
        self, record: BillingRecord, expected_status: BillingStatus
    ) -> bool:
        stmt = (
            update(BillingRecordTable)
            .where(
                BillingRecordTable.id == record.id,
                BillingRecordTable.status == expected_status.value,
            )
            .values(**_column_values(record, exclude={"id", "created_at"}))
            .execution_options(synchronize_session=False)
        )
        async with self.session_maker() as session, session.begin():
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def get_billing_record(self, record_id: str) -> BillingRecord | None:
        async with self.session_maker() as session:
            row = await session.get(BillingRecordTable, record_id)
            return BillingRecord.model_validate(row) if row else None

    async def get_billing_record_by_key(self, idempotency_key: str) -> BillingRecord | None:
        stmt = select(BillingRecordTable).where(
            BillingRecordTable.idempotency_key == idempotency_key
        )
        async with self.session_maker() as session:
            row = (await session.execute(stmt)).scalars().first()
            return BillingRecord.model_validate(row) if row else None

    async def list_billing_records(self, subscription_id: str) -> list[BillingRecord]:
        stmt = (
            select(BillingRecordTable)
            .where(BillingRecordTable.subscription_id == subscription_id)
            .order_by(BillingRecordTable.created_at)
        )
        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [BillingRecord.model_validate(row) for row in rows]

    async def list_billing_records_by_status(
        self, statuses: Collection[BillingStatus]
    ) -> list[BillingRecord]:
        stmt = (
            select(BillingRecordTable)
            .where(BillingRecordTable.status.in_([s.value for s in statuses]))
            .order_by(BillingRecordTable.created_at)
        )
        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [BillingRecord.model_validate(row) for row in rows]


class SqlAlchemyWebhookEventStore:
    """``WebhookEventStore`` backed by SQLAlchemy."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    async def claim(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        now: datetime,
        lease_seconds: float,
    ) -> tuple[ClaimOutcome, WebhookEventRecord]:
        record = WebhookEventRecord(
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            received_at=now,
            last_attempt_at=now,
        )
        try:
            async with self.session_maker() as session, session.begin():
                session.add(WebhookEventTable(**_column_values(record)))
            return ClaimOutcome.NEW, record
        except IntegrityError:
            pass

        stale_before = now - timedelta(seconds=lease_seconds)
        reclaim = (
            update(WebhookEventTable)
            .where(
                WebhookEventTable.event_id == event_id,
                or_(
                    WebhookEventTable.status == WebhookEventStatus.FAILED.value,
                    and_(
                        WebhookEventTable.status == WebhookEventStatus.PROCESSING.value,
                        WebhookEventTable.last_attempt_at < stale_before,
                    ),
                ),
            )
            .values(status=WebhookEventStatus.PROCESSING.value, last_attempt_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self.session_maker() as session, session.begin():
            reclaimed = (await session.execute(reclaim)).rowcount == 1
            row = await session.get(WebhookEventTable, event_id, populate_existing=True)
            current = WebhookEventRecord.model_validate(row)

        if reclaimed:
            return ClaimOutcome.RETRY, current
        if current.status is WebhookEventStatus.PROCESSED:
            return ClaimOutcome.PROCESSED, current
        return ClaimOutcome.PROCESSING, current

    async def record_attempt(self, event_id: str, error: str | None, now: datetime) -> None:
        stmt = (
            update(WebhookEventTable)
            .where(WebhookEventTable.event_id == event_id)
            .values(attempts=WebhookEventTable.attempts + 1, last_error=error, last_attempt_at=now)
        )
        async with self.session_maker() as session, session.begin():
            await session.execute(stmt)

    async def mark_processed(self, event_id: str, now: datetime) -> None:
        stmt = (
            update(WebhookEventTable)
            .where(WebhookEventTable.event_id == event_id)
            .values(status=WebhookEventStatus.PROCESSED.value, processed_at=now)
        )
        async with self.session_maker() as session, session.begin():
            await session.execute(stmt)

    async def mark_failed(self, event_id: str, error: str, now: datetime) -> None:
        stmt = (
            update(WebhookEventTable)
            .where(WebhookEventTable.event_id == event_id)
            .values(status=WebhookEventStatus.FAILED.value, last_error=error, last_attempt_at=now)
        )
        async with self.session_maker() as session, session.begin():
            await session.execute(stmt)

    async def get(self, event_id: str) -> WebhookEventRecord | None:
        async with self.session_maker() as session:
            row = await session.get(WebhookEventTable, event_id)
            return WebhookEventRecord.model_validate(row) if row else None

    async def list_failed(self) -> list[WebhookEventRecord]:
        stmt = (
            select(WebhookEventTable)
            .where(WebhookEventTable.status == WebhookEventStatus.FAILED.value)
            .order_by(WebhookEventTable.received_at)
        )
        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [WebhookEventRecord.model_validate(row) for row in rows]

    async def purge_processed(self, before: datetime) -> int:
        stmt = delete(WebhookEventTable).where(
            WebhookEventTable.status == WebhookEventStatus.PROCESSED.value,
            WebhookEventTable.processed_at < before,
        )
        async with self.session_maker() as session, session.begin():
            result = await session.execute(stmt)
            return result.rowcount or 0
