"""
Billing module configuration
"""

from pydantic import BaseModel, ConfigDict, Field


class StripeConfig(BaseModel):
    """Stripe configuration"""

    model_config = ConfigDict()

    api_key: str = Field(..., description="Stripe API key")
    webhook_secret: str | None = Field(None, description="Stripe webhook secret")


class RenewalConfig(BaseModel):
    """Renewal and charge policy"""

    model_config = ConfigDict()

    failure_threshold: int = Field(
        3, ge=1, description="Consecutive renewal failures before a subscription expires"
    )
    charge_timeout_seconds: float = Field(
        30.0, gt=0, description="Upper bound for a single processor charge call"
    )
    lock_conflict_retries: int = Field(
        5, ge=1, description="Optimistic update attempts before giving up"
    )
    retry_interval_hours: int = Field(
        24, ge=0, description="Wait between renewal retries of a payment-paused subscription"
    )


class WebhookConfig(BaseModel):
    """Webhook reconciliation policy"""

    model_config = ConfigDict()

    max_attempts: int = Field(3, ge=1, description="Handling attempts per delivery")
    base_delay_seconds: float = Field(
        5.0, ge=0, description="Attempt k waits base_delay_seconds * k before retrying"
    )
    retention_days: int = Field(30, ge=1, description="Dedup entry retention window")
    signature_tolerance_seconds: int = Field(
        300, ge=0, description="Accepted timestamp skew on signed payloads"
    )


class BillingConfig(BaseModel):
    """Main billing configuration"""

    model_config = ConfigDict()

    default_currency: str = Field("USD", description="Default currency code")
    stripe: StripeConfig | None = None
    renewal: RenewalConfig = Field(default_factory=RenewalConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)

    @classmethod
    def from_settings(cls) -> "BillingConfig":
        """Create configuration from the application settings."""
        from telehealth.settings import get_settings

        billing = get_settings().billing

        stripe_config = None
        if billing.stripe_api_key:
            stripe_config = StripeConfig(
                api_key=billing.stripe_api_key,
                webhook_secret=billing.stripe_webhook_secret or None,
            )

        return cls(
            default_currency=billing.default_currency.upper(),
            stripe=stripe_config,
            renewal=RenewalConfig(
                failure_threshold=billing.renewal_failure_threshold,
                charge_timeout_seconds=billing.charge_timeout_seconds,
                lock_conflict_retries=billing.lock_conflict_retries,
                retry_interval_hours=billing.renewal_retry_interval_hours,
            ),
            webhook=WebhookConfig(
                max_attempts=billing.webhook_max_attempts,
                base_delay_seconds=billing.webhook_base_delay_seconds,
                retention_days=billing.webhook_retention_days,
                signature_tolerance_seconds=billing.webhook_signature_tolerance_seconds,
            ),
        )


_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Get the global billing configuration."""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_settings()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Override the global billing configuration (mainly for testing)."""
    global _billing_config
    _billing_config = config
