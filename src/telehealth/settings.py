"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for the subscription engine configuration.
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: BILLING__RENEWAL_FAILURE_THRESHOLD=5
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("telehealth-subscriptions", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("telehealth", description="Database name")
        username: str = Field("telehealth", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery (renewal and retention jobs)
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        renewal_interval_minutes: int = Field(
            60, description="How often the due-renewal sweep runs"
        )
        purge_interval_hours: int = Field(24, description="How often webhook dedup entries are purged")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Observability configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or console)")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log records")
        otel_service_name: str = Field(
            "telehealth-subscriptions", description="Service name reported with metrics"
        )

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Subscription billing configuration."""

        default_currency: str = Field("USD", description="Default currency for plans")

        # Renewal policy
        renewal_failure_threshold: int = Field(
            3, description="Consecutive renewal failures before a subscription expires"
        )
        charge_timeout_seconds: float = Field(
            30.0, description="Upper bound for a single payment processor call"
        )
        lock_conflict_retries: int = Field(
            5, description="Optimistic update retries before giving up"
        )
        renewal_retry_interval_hours: int = Field(
            24, description="Hours between renewal retries of a payment-paused subscription"
        )

        # Webhooks
        webhook_max_attempts: int = Field(3, description="Webhook handling attempts")
        webhook_base_delay_seconds: float = Field(
            5.0, description="Delay unit between webhook attempts (attempt k waits k units)"
        )
        webhook_retention_days: int = Field(
            30, description="How long processed webhook ids are kept for deduplication"
        )
        webhook_signature_tolerance_seconds: int = Field(
            300, description="Accepted clock skew for signed webhook payloads"
        )

        # Payment processor credentials
        stripe_api_key: str = Field("", description="Stripe secret API key")
        stripe_webhook_secret: str = Field("", description="Stripe webhook signing secret")

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    def validate_environment(cls, v: object) -> object:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


settings = get_settings()
