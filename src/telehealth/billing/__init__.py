"""
Subscription billing module.

Provides:
- Plan catalog with privilege grants
- Subscription lifecycle state machine
- Entitlement metering per billing cycle
- Billing orchestration (first charge, renewal, proration, retry)
- Payment processor webhook reconciliation
"""

from telehealth.billing.exceptions import (
    BillingError,
    BillingRecordNotFoundError,
    ConcurrencyConflictError,
    ConcurrentOperationError,
    DuplicateSubscriptionError,
    PaymentError,
    PermanentProcessorError,
    PlanInactiveError,
    PlanNotFoundError,
    SamePlanError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    TransientProcessorError,
    ValidationError,
    WebhookError,
    WebhookPayloadError,
    WebhookProcessingError,
    WebhookSignatureError,
)
from telehealth.billing.models import (
    BillingCycle,
    BillingRecord,
    BillingStatus,
    BillingType,
    Plan,
    PrivilegeGrant,
    Subscription,
    SubscriptionStatus,
)
from telehealth.billing.service import BillingEngine, build_engine, build_sql_engine

__all__ = [
    # Exceptions
    "BillingError",
    "ValidationError",
    "SubscriptionNotFoundError",
    "PlanNotFoundError",
    "PlanInactiveError",
    "DuplicateSubscriptionError",
    "SamePlanError",
    "SubscriptionStateError",
    "BillingRecordNotFoundError",
    "ConcurrentOperationError",
    "PaymentError",
    "TransientProcessorError",
    "PermanentProcessorError",
    "WebhookError",
    "WebhookSignatureError",
    "WebhookPayloadError",
    "WebhookProcessingError",
    "ConcurrencyConflictError",
    # Models
    "BillingCycle",
    "BillingRecord",
    "BillingStatus",
    "BillingType",
    "Plan",
    "PrivilegeGrant",
    "Subscription",
    "SubscriptionStatus",
    # Wiring
    "BillingEngine",
    "build_engine",
    "build_sql_engine",
]
