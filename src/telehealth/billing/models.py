"""
Subscription billing domain models.

Plans and their privilege grants, subscriptions, usage counters, billing
records, status history and webhook dedup entries. These are the values
passed between the engine components and the repositories.
"""

import calendar
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by calendar months, clamping to the last day of the month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


# ============================================================================
# Enums
# ============================================================================


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class BillingCycle(str, Enum):
    """Billing cycle lengths."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"

    @property
    def months(self) -> int:
        return {"monthly": 1, "quarterly": 3, "annual": 12}[self.value]

    def advance(self, value: datetime, cycles: int = 1) -> datetime:
        """Date one (or ``cycles``) billing periods after ``value``."""
        return add_months(value, self.months * cycles)


class BillingStatus(str, Enum):
    """Billing record status."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    ABANDONED = "abandoned"
    REFUNDED = "refunded"
    OVERDUE = "overdue"


class BillingType(str, Enum):
    """What a billing record was charged for."""

    UPFRONT = "upfront"
    RECURRING = "recurring"
    PRORATION = "proration"
    CREDIT = "credit"
    RETRY = "retry"
    PROCESSOR_INVOICE = "processor_invoice"


class PauseReason(str, Enum):
    """Why a subscription is paused."""

    USER = "user"
    PAYMENT_FAILED = "payment_failed"


class WebhookEventStatus(str, Enum):
    """Processing outcome of a webhook event."""

    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


# ============================================================================
# Catalog
# ============================================================================


class PrivilegeGrant(BaseModel):
    """Allowance for one privilege granted per billing cycle."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    privilege_name: str = Field(min_length=1, max_length=100)
    allowance: int = Field(ge=0, description="Units available per billing cycle")
    description: str | None = None


class Plan(BaseModel):
    """Subscription plan definition."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    monthly_price: Decimal = Field(ge=0)
    quarterly_price: Decimal | None = Field(None, ge=0)
    annual_price: Decimal | None = Field(None, ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    is_active: bool = True
    grants: list[PrivilegeGrant] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    def price_for(self, cycle: BillingCycle) -> Decimal:
        """Price of one billing period of ``cycle``.

        Quarterly and annual prices fall back to multiples of the monthly price.
        """
        if cycle is BillingCycle.QUARTERLY and self.quarterly_price is not None:
            return self.quarterly_price
        if cycle is BillingCycle.ANNUAL and self.annual_price is not None:
            return self.annual_price
        return self.monthly_price * cycle.months

    def grant_for(self, privilege_name: str) -> PrivilegeGrant | None:
        for grant in self.grants:
            if grant.privilege_name == privilege_name:
                return grant
        return None


# ============================================================================
# Subscriptions
# ============================================================================


class Subscription(BaseModel):
    """A user's subscription to a plan."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    user_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    current_price: Decimal
    currency: str = "USD"
    auto_renew: bool = True

    start_date: datetime
    next_billing_date: datetime
    last_billing_date: datetime | None = None
    paused_date: datetime | None = None
    pause_reason: PauseReason | None = None
    resumed_date: datetime | None = None
    cancelled_date: datetime | None = None
    cancellation_reason: str | None = None
    expired_date: datetime | None = None

    failed_payment_attempts: int = 0
    last_payment_error: str | None = None

    processor_subscription_id: str | None = None
    processor_customer_id: str | None = None

    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_live(self) -> bool:
        """Active or paused, i.e. not terminated."""
        return not self.status.is_terminal

    def current_cycle_start(self) -> datetime:
        return self.billing_cycle.advance(self.next_billing_date, -1)

    def dates_consistent(self) -> bool:
        """Status/date invariant: paused and cancelled dates match the status."""
        if self.status is SubscriptionStatus.ACTIVE:
            return self.paused_date is None and self.cancelled_date is None
        if self.status is SubscriptionStatus.PAUSED:
            return self.paused_date is not None and self.cancelled_date is None
        if self.status is SubscriptionStatus.CANCELLED:
            return self.cancelled_date is not None and self.paused_date is None
        return self.paused_date is None and self.cancelled_date is None


class SubscriptionStatusHistory(BaseModel):
    """Audit row appended with every status change."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    subscription_id: str
    from_status: SubscriptionStatus | None
    to_status: SubscriptionStatus
    reason: str | None = None
    changed_by: str | None = None
    changed_at: datetime = Field(default_factory=utcnow)


class UsageRecord(BaseModel):
    """Consumption counter for one privilege of one subscription."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    subscription_id: str
    privilege_name: str
    grant_id: str | None = None
    used_value: int = Field(0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)


class PrivilegeUsage(BaseModel):
    """Read-only allowance summary for one privilege."""

    privilege_name: str
    allowance: int
    used: int
    remaining: int


# ============================================================================
# Billing records
# ============================================================================


class BillingRecord(BaseModel):
    """One charge attempt (or credit) against a subscription."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    subscription_id: str
    user_id: str
    amount: Decimal
    currency: str = "USD"
    status: BillingStatus = BillingStatus.PENDING
    billing_type: BillingType = BillingType.RECURRING
    due_date: datetime = Field(default_factory=utcnow)
    paid_date: datetime | None = None
    description: str | None = None
    idempotency_key: str
    failure_reason: str | None = None
    transaction_id: str | None = None
    retry_of: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Webhook dedup store
# ============================================================================


class WebhookEventRecord(BaseModel):
    """Dedup entry for a processor event id."""

    model_config = ConfigDict(from_attributes=True)

    event_id: str
    event_type: str
    status: WebhookEventStatus = WebhookEventStatus.PROCESSING
    attempts: int = 0
    last_error: str | None = None
    received_at: datetime = Field(default_factory=utcnow)
    last_attempt_at: datetime | None = None
    processed_at: datetime | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class ClaimOutcome(str, Enum):
    """Result of claiming a webhook event id for processing."""

    NEW = "new"
    RETRY = "retry"
    PROCESSING = "processing"
    PROCESSED = "processed"


__all__ = [
    "utcnow",
    "new_id",
    "add_months",
    "SubscriptionStatus",
    "BillingCycle",
    "BillingStatus",
    "BillingType",
    "PauseReason",
    "WebhookEventStatus",
    "PrivilegeGrant",
    "Plan",
    "Subscription",
    "SubscriptionStatusHistory",
    "UsageRecord",
    "PrivilegeUsage",
    "BillingRecord",
    "WebhookEventRecord",
    "ClaimOutcome",
]
