"""
Billing system exceptions.

Custom exceptions for subscription billing with clear error messages.
Every error carries a machine-readable code, a status code, context and a
recovery hint. Expected business outcomes are returned wrapped in a
``Result`` rather than raised.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP-style status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


# ============================================================================
# Validation errors (never retried)
# ============================================================================


class ValidationError(BillingError):
    """Business-rule violation surfaced immediately to the caller."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "VALIDATION_ERROR", status_code=400, context=context, recovery_hint=recovery_hint
        )


class SubscriptionNotFoundError(ValidationError):
    """Subscription not found error."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            "Subscription not found",
            context={"subscription_id": subscription_id},
            recovery_hint="Verify the subscription ID",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        self.status_code = 404


class PlanNotFoundError(ValidationError):
    """Plan not found error."""

    def __init__(self, plan_id: str) -> None:
        super().__init__(
            "Subscription plan not found",
            context={"plan_id": plan_id},
            recovery_hint="Verify the plan ID",
        )
        self.error_code = "PLAN_NOT_FOUND"
        self.status_code = 404


class PlanInactiveError(ValidationError):
    """Plan exists but no longer accepts new subscriptions."""

    def __init__(self, plan_id: str) -> None:
        super().__init__(
            "Subscription plan is not active",
            context={"plan_id": plan_id},
            recovery_hint="Choose one of the currently offered plans",
        )
        self.error_code = "PLAN_INACTIVE"


class DuplicateSubscriptionError(ValidationError):
    """User already holds a live subscription to the plan."""

    def __init__(self, user_id: str, plan_id: str) -> None:
        super().__init__(
            "User already has an active or paused subscription for this plan",
            context={"user_id": user_id, "plan_id": plan_id},
            recovery_hint="Resume or change the existing subscription instead",
        )
        self.error_code = "DUPLICATE_SUBSCRIPTION"
        self.status_code = 409


class SamePlanError(ValidationError):
    """Plan change requested to the plan already in use."""

    def __init__(self, subscription_id: str, plan_id: str) -> None:
        super().__init__(
            "Already on this plan",
            context={"subscription_id": subscription_id, "plan_id": plan_id},
        )
        self.error_code = "SAME_PLAN"
        self.status_code = 409


class SubscriptionStateError(ValidationError):
    """Transition not allowed from the subscription's current status."""

    def __init__(
        self,
        message: str,
        subscription_id: str | None = None,
        current_status: str | None = None,
    ) -> None:
        context: dict[str, Any] = {}
        if subscription_id:
            context["subscription_id"] = subscription_id
        if current_status:
            context["current_status"] = current_status
        super().__init__(message, context=context)
        self.error_code = "INVALID_SUBSCRIPTION_STATE"
        self.status_code = 409


class BillingRecordNotFoundError(ValidationError):
    """Billing record not found error."""

    def __init__(self, record_id: str) -> None:
        super().__init__(
            "Billing record not found",
            context={"billing_record_id": record_id},
        )
        self.error_code = "BILLING_RECORD_NOT_FOUND"
        self.status_code = 404


class ConcurrentOperationError(ValidationError):
    """Another attempt holding the same idempotency key is still in flight."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            "An operation with this idempotency key is already in progress",
            context={"idempotency_key": idempotency_key},
            recovery_hint="Wait for the first attempt to finish and query its outcome",
        )
        self.error_code = "OPERATION_IN_PROGRESS"
        self.status_code = 409


# ============================================================================
# Payment processor errors
# ============================================================================


class PaymentError(BillingError):
    """Payment processing errors."""

    def __init__(
        self,
        message: str,
        payment_id: str | None = None,
        provider: str | None = None,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        context = dict(context or {})
        if payment_id:
            context["payment_id"] = payment_id
        if provider:
            context["provider"] = provider
        super().__init__(
            message,
            "PAYMENT_ERROR",
            status_code=402,
            context=context,
            recovery_hint=recovery_hint,
        )


class TransientProcessorError(PaymentError):
    """Network, timeout or 5xx failure talking to the payment processor."""

    retryable = True

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(
            message,
            provider=provider,
            recovery_hint="Retry later; the processor could not be reached",
        )
        self.error_code = "PROCESSOR_UNAVAILABLE"
        self.status_code = 503


class PermanentProcessorError(PaymentError):
    """Card declined, authentication required or similar final refusal."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(
            message,
            provider=provider,
            recovery_hint="Update the payment method before retrying",
        )
        self.error_code = "PAYMENT_DECLINED"


# ============================================================================
# Webhook errors
# ============================================================================


class WebhookError(BillingError):
    """Webhook ingestion errors."""

    def __init__(
        self,
        message: str,
        event_id: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        context = dict(context or {})
        if event_id:
            context["event_id"] = event_id
        super().__init__(message, "WEBHOOK_ERROR", status_code=400, context=context)


class WebhookSignatureError(WebhookError):
    """Signed payload could not be verified."""

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message)
        self.error_code = "WEBHOOK_SIGNATURE_INVALID"
        self.status_code = 401


class WebhookPayloadError(WebhookError):
    """Webhook payload is malformed or missing required fields."""

    def __init__(self, message: str, event_id: str | None = None) -> None:
        super().__init__(message, event_id=event_id)
        self.error_code = "WEBHOOK_PAYLOAD_INVALID"


class WebhookProcessingError(WebhookError):
    """Handling an event failed after exhausting every attempt."""

    def __init__(self, message: str, event_id: str, attempts: int) -> None:
        super().__init__(message, event_id=event_id, context={"attempts": attempts})
        self.error_code = "WEBHOOK_PROCESSING_FAILED"
        self.status_code = 500


# ============================================================================
# Concurrency
# ============================================================================


class ConcurrencyConflictError(BillingError):
    """Optimistic version check lost against a concurrent writer."""

    retryable = True

    def __init__(self, subscription_id: str, attempts: int | None = None) -> None:
        context: dict[str, Any] = {"subscription_id": subscription_id}
        if attempts is not None:
            context["attempts"] = attempts
        super().__init__(
            "Subscription was modified concurrently",
            "CONCURRENCY_CONFLICT",
            status_code=409,
            context=context,
            recovery_hint="Retry the operation",
        )
