"""
Fixtures for billing engine tests.

The engine runs against the in-memory repositories with small fakes for
the payment gateway, notification channel, user directory and audit sink.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio

from telehealth.billing.config import BillingConfig, RenewalConfig, WebhookConfig
from telehealth.billing.entitlements import MEDICATION_SUPPLY, TELECONSULTATION
from telehealth.billing.exceptions import WebhookSignatureError
from telehealth.billing.interfaces import ChargeResult, PaymentMethod, UserContact
from telehealth.billing.metrics import BillingMetrics
from telehealth.billing.models import Plan, PrivilegeGrant, Subscription
from telehealth.billing.repositories import (
    InMemorySubscriptionRepository,
    InMemoryWebhookEventStore,
)
from telehealth.billing.service import BillingEngine, build_engine
from telehealth.core.result import Result

START = datetime(2025, 4, 1, 12, 0, tzinfo=UTC)
VALID_SIGNATURE = "t=1,v1=valid"


class FakeClock:
    """Settable clock injected into every component."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Payment gateway returning queued outcomes, succeeding by default."""

    def __init__(self) -> None:
        self.outcomes: list[Any] = []
        self.calls: list[dict[str, Any]] = []
        self.payment_methods: list[PaymentMethod] = []

    def fail_next(self, message: str = "Card declined", retryable: bool = False) -> None:
        self.outcomes.append(ChargeResult.declined(message, retryable=retryable))

    def raise_next(self, error: BaseException) -> None:
        self.outcomes.append(error)

    async def charge(
        self,
        user_id: str,
        amount: Decimal,
        currency: str,
        *,
        idempotency_key: str,
        description: str | None = None,
    ) -> ChargeResult:
        self.calls.append(
            {
                "user_id": user_id,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "description": description,
            }
        )
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return ChargeResult.ok(f"txn_{len(self.calls)}")

    async def list_payment_methods(self, user_id: str) -> list[PaymentMethod]:
        return list(self.payment_methods)


@dataclass
class SentNotification:
    kind: str
    email: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)


class FakeNotifier:
    """Notification sender recording every dispatch."""

    def __init__(self) -> None:
        self.sent: list[SentNotification] = []
        self.fail = False

    async def send(
        self, kind: str, recipient_email: str, recipient_name: str, payload: dict[str, Any]
    ) -> Result[None]:
        if self.fail:
            return Result.failure(RuntimeError("smtp unavailable"))
        self.sent.append(SentNotification(kind, recipient_email, recipient_name, payload))
        return Result.success()

    def kinds(self) -> list[str]:
        return [n.kind for n in self.sent]


class FakeUsers:
    async def get_contact(self, user_id: str) -> UserContact | None:
        if user_id.startswith("ghost"):
            return None
        return UserContact(user_id=user_id, email=f"{user_id}@example.com", display_name=f"Patient {user_id}")


@dataclass
class AuditEntry:
    actor_id: str | None
    action: str
    entity_type: str
    entity_id: str
    detail: dict[str, Any]


class FakeAudit:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(
        self,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self.entries.append(AuditEntry(actor_id, action, entity_type, entity_id, detail or {}))

    def actions(self) -> list[str]:
        return [e.action for e in self.entries]


class FakeVerifier:
    """Accepts exactly ``VALID_SIGNATURE``."""

    def verify(self, payload: bytes | str, signature_header: str | None) -> None:
        if signature_header != VALID_SIGNATURE:
            raise WebhookSignatureError()


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def valid_signature() -> str:
    return VALID_SIGNATURE


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def audit() -> FakeAudit:
    return FakeAudit()


@pytest.fixture
def users() -> FakeUsers:
    return FakeUsers()


@pytest.fixture
def repository() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def webhook_store() -> InMemoryWebhookEventStore:
    return InMemoryWebhookEventStore()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        renewal=RenewalConfig(failure_threshold=3, charge_timeout_seconds=1.0, retry_interval_hours=24),
        webhook=WebhookConfig(max_attempts=3, base_delay_seconds=5.0, retention_days=30),
    )


@pytest.fixture
def engine(
    repository: InMemorySubscriptionRepository,
    webhook_store: InMemoryWebhookEventStore,
    gateway: FakeGateway,
    notifier: FakeNotifier,
    audit: FakeAudit,
    users: FakeUsers,
    billing_config: BillingConfig,
    clock: FakeClock,
    sleeper: SleepRecorder,
) -> BillingEngine:
    built = build_engine(
        repository,
        webhook_store,
        gateway,
        notifier,
        users,
        audit=audit,
        verifier=FakeVerifier(),
        config=billing_config,
        metrics=BillingMetrics(),
        clock=clock,
    )
    assert built.reconciler is not None
    built.reconciler.sleep = sleeper
    return built


@pytest_asyncio.fixture
async def plan_a(repository: InMemorySubscriptionRepository) -> Plan:
    """$20/month, 5 teleconsultations and 1 medication supply per cycle."""
    plan = Plan(
        id="plan-a",
        name="Basic Care",
        monthly_price=Decimal("20.00"),
        grants=[
            PrivilegeGrant(privilege_name=TELECONSULTATION, allowance=5),
            PrivilegeGrant(privilege_name=MEDICATION_SUPPLY, allowance=1),
        ],
    )
    return await repository.save_plan(plan)


@pytest_asyncio.fixture
async def plan_b(repository: InMemorySubscriptionRepository) -> Plan:
    """$40/month, 10 teleconsultations per cycle."""
    plan = Plan(
        id="plan-b",
        name="Premium Care",
        monthly_price=Decimal("40.00"),
        grants=[PrivilegeGrant(privilege_name=TELECONSULTATION, allowance=10)],
    )
    return await repository.save_plan(plan)


@pytest_asyncio.fixture
async def subscription(engine: BillingEngine, plan_a: Plan, notifier: FakeNotifier) -> Subscription:
    """Active subscription of patient-1 to plan A, created at ``START``."""
    result = await engine.orchestrator.create_subscription("patient-1", plan_a.id)
    assert result.is_success, result
    notifier.sent.clear()
    return result.unwrap()
