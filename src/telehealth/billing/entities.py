"""
SQLAlchemy tables for subscription billing.

UUID string keys throughout. Uniqueness constraints carry the idempotency
guarantees: one billing record per idempotency key, one usage counter per
(subscription, privilege) and one dedup entry per processor event id.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from telehealth.db import Base, TimestampMixin


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime column that always loads as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


Money = Numeric(15, 4, asdecimal=True)


class PlanTable(Base, TimestampMixin):
    """Subscription plan definitions."""

    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    monthly_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    quarterly_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    annual_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    grants: Mapped[list["PlanPrivilegeTable"]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PlanPrivilegeTable.privilege_name",
    )

    __table_args__ = (Index("ix_subscription_plans_active", "is_active"),)


class PlanPrivilegeTable(Base):
    """Privilege allowances granted by a plan."""

    __tablename__ = "plan_privileges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    plan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False
    )
    privilege_name: Mapped[str] = mapped_column(String(100), nullable=False)
    allowance: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    plan: Mapped[PlanTable] = relationship(back_populates="grants")

    __table_args__ = (
        UniqueConstraint("plan_id", "privilege_name", name="uq_plan_privileges_plan_name"),
    )


class SubscriptionTable(Base):
    """User subscriptions. Never hard-deleted."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("subscription_plans.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)
    current_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    next_billing_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    paused_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    pause_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resumed_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expired_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    failed_payment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_payment_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    processor_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processor_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_subscriptions_user_plan", "user_id", "plan_id"),
        Index("ix_subscriptions_status_next_billing", "status", "next_billing_date"),
        Index("ix_subscriptions_processor_id", "processor_subscription_id"),
    )


class SubscriptionStatusHistoryTable(Base):
    """Append-only log of status changes."""

    __tablename__ = "subscription_status_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class UsageRecordTable(Base):
    """Per-cycle consumption counters."""

    __tablename__ = "usage_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("subscriptions.id"), nullable=False
    )
    privilege_name: Mapped[str] = mapped_column(String(100), nullable=False)
    grant_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    used_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("subscription_id", "privilege_name", name="uq_usage_subscription_privilege"),
    )


class BillingRecordTable(Base):
    """Charge attempts and credits."""

    __tablename__ = "billing_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    billing_type: Mapped[str] = mapped_column(String(30), nullable=False)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    paid_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    retry_of: Mapped[str | None] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_billing_records_idempotency_key"),
        Index("ix_billing_records_status", "status"),
    )


class WebhookEventTable(Base):
    """Processor event dedup entries."""

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (Index("ix_webhook_events_status", "status"),)
