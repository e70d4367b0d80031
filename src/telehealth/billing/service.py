"""
Wiring for the billing engine.

Builds the components around one repository, one lock registry and one
set of collaborators. Background jobs resolve the engine through the
factory registered by the hosting application.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from telehealth.billing.admin import AdminOperations
from telehealth.billing.catalog import PlanCatalog
from telehealth.billing.config import BillingConfig, get_billing_config
from telehealth.billing.entitlements import EntitlementLedger
from telehealth.billing.events import LoggingAuditRecorder, NotificationDispatcher
from telehealth.billing.interfaces import (
    AuditRecorder,
    NotificationSender,
    PaymentGateway,
    UserDirectory,
    WebhookVerifier,
)
from telehealth.billing.locks import LockRegistry
from telehealth.billing.metrics import BillingMetrics, get_billing_metrics
from telehealth.billing.models import utcnow
from telehealth.billing.orchestrator import BillingOrchestrator
from telehealth.billing.repositories import (
    SqlAlchemySubscriptionRepository,
    SqlAlchemyWebhookEventStore,
    SubscriptionRepository,
    WebhookEventStore,
)
from telehealth.billing.state_machine import SubscriptionStateMachine
from telehealth.billing.webhooks import StripeWebhookVerifier, WebhookReconciler


@dataclass
class BillingEngine:
    """Fully wired billing components sharing one repository and lock registry."""

    repository: SubscriptionRepository
    webhook_store: WebhookEventStore
    locks: LockRegistry
    catalog: PlanCatalog
    state_machine: SubscriptionStateMachine
    ledger: EntitlementLedger
    orchestrator: BillingOrchestrator
    admin: AdminOperations
    reconciler: WebhookReconciler | None
    config: BillingConfig


def build_engine(
    repository: SubscriptionRepository,
    webhook_store: WebhookEventStore,
    gateway: PaymentGateway,
    sender: NotificationSender,
    users: UserDirectory,
    *,
    audit: AuditRecorder | None = None,
    verifier: WebhookVerifier | None = None,
    config: BillingConfig | None = None,
    metrics: BillingMetrics | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> BillingEngine:
    """Assemble the engine.

    Without an explicit verifier the Stripe verifier is used when a webhook
    secret is configured; otherwise no reconciler is built.
    """
    config = config or get_billing_config()
    metrics = metrics or get_billing_metrics()
    audit = audit or LoggingAuditRecorder()
    locks = LockRegistry()
    notifications = NotificationDispatcher(sender, users)

    catalog = PlanCatalog(repository, audit)
    state_machine = SubscriptionStateMachine(
        repository, locks, notifications, audit, config=config, metrics=metrics, clock=clock
    )
    ledger = EntitlementLedger(repository, locks, metrics=metrics)
    orchestrator = BillingOrchestrator(
        repository,
        state_machine,
        catalog,
        gateway,
        notifications,
        audit,
        locks,
        config=config,
        metrics=metrics,
        clock=clock,
    )
    admin = AdminOperations(repository, state_machine, catalog, audit)

    if verifier is None and config.stripe and config.stripe.webhook_secret:
        verifier = StripeWebhookVerifier(
            config.stripe.webhook_secret, config.webhook.signature_tolerance_seconds
        )
    reconciler = None
    if verifier is not None:
        reconciler = WebhookReconciler(
            repository,
            webhook_store,
            state_machine,
            orchestrator,
            verifier,
            config=config,
            metrics=metrics,
            clock=clock,
        )

    return BillingEngine(
        repository=repository,
        webhook_store=webhook_store,
        locks=locks,
        catalog=catalog,
        state_machine=state_machine,
        ledger=ledger,
        orchestrator=orchestrator,
        admin=admin,
        reconciler=reconciler,
        config=config,
    )


def build_sql_engine(
    session_maker: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway,
    sender: NotificationSender,
    users: UserDirectory,
    **kwargs: Any,
) -> BillingEngine:
    """Engine backed by the SQLAlchemy repositories."""
    return build_engine(
        SqlAlchemySubscriptionRepository(session_maker),
        SqlAlchemyWebhookEventStore(session_maker),
        gateway,
        sender,
        users,
        **kwargs,
    )


_engine_factory: Callable[[], BillingEngine] | None = None


def configure_engine_factory(factory: Callable[[], BillingEngine] | None) -> None:
    """Register how background jobs obtain the engine (mainly for hosts and tests)."""
    global _engine_factory
    _engine_factory = factory


def get_engine() -> BillingEngine:
    """Build an engine from the registered factory.

    Background jobs run each invocation in a fresh event loop, so the engine
    (and its asyncio locks) is not shared between invocations.
    """
    if _engine_factory is None:
        raise RuntimeError(
            "Billing engine factory is not configured; call configure_engine_factory() at startup"
        )
    return _engine_factory()
