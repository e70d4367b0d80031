"""
Integration tests for the SQLAlchemy repositories.

Run against a throwaway SQLite database through aiosqlite.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from telehealth.billing.models import (
    BillingRecord,
    BillingStatus,
    ClaimOutcome,
    PauseReason,
    Plan,
    PrivilegeGrant,
    Subscription,
    SubscriptionStatus,
    SubscriptionStatusHistory,
    WebhookEventStatus,
)
from telehealth.billing.repositories import (
    SqlAlchemySubscriptionRepository,
    SqlAlchemyWebhookEventStore,
)
from telehealth.db import create_all_tables

NOW = datetime(2025, 4, 1, 12, tzinfo=UTC)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/billing.db")
    await create_all_tables(engine)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def repo(session_maker):
    return SqlAlchemySubscriptionRepository(session_maker)


@pytest.fixture
def store(session_maker):
    return SqlAlchemyWebhookEventStore(session_maker)


@pytest_asyncio.fixture
async def plan(repo):
    return await repo.save_plan(
        Plan(
            name="Basic Care",
            monthly_price=Decimal("20.00"),
            grants=[PrivilegeGrant(privilege_name="Teleconsultation", allowance=5)],
        )
    )


@pytest_asyncio.fixture
async def subscription(repo, plan):
    sub = Subscription(
        user_id="patient-1",
        plan_id=plan.id,
        current_price=Decimal("20.00"),
        start_date=NOW,
        next_billing_date=NOW + timedelta(days=30),
        last_billing_date=NOW,
    )
    history = SubscriptionStatusHistory(
        subscription_id=sub.id, from_status=None, to_status=SubscriptionStatus.ACTIVE, changed_at=NOW
    )
    return await repo.add_subscription(sub, history)


@pytest.mark.integration
class TestPlansAndSubscriptions:
    """Plan and subscription persistence."""

    @pytest.mark.asyncio
    async def test_plan_round_trip_with_grants(self, repo, plan):
        loaded = await repo.get_plan(plan.id)

        assert loaded.name == "Basic Care"
        assert loaded.monthly_price == Decimal("20.00")
        assert [(g.privilege_name, g.allowance) for g in loaded.grants] == [("Teleconsultation", 5)]

    @pytest.mark.asyncio
    async def test_plan_update_replaces_grants(self, repo, plan):
        updated = plan.model_copy(
            update={"grants": [PrivilegeGrant(privilege_name="MedicationSupply", allowance=2)]}
        )
        await repo.save_plan(updated)

        loaded = await repo.get_plan(plan.id)
        assert [g.privilege_name for g in loaded.grants] == ["MedicationSupply"]

    @pytest.mark.asyncio
    async def test_subscription_dates_are_utc(self, repo, subscription):
        loaded = await repo.get_subscription(subscription.id)

        assert loaded.start_date == NOW
        assert loaded.next_billing_date.tzinfo is not None
        assert loaded.status is SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_version_compare_and_swap(self, repo, subscription):
        paused = subscription.model_copy(
            update={
                "status": SubscriptionStatus.PAUSED,
                "paused_date": NOW,
                "pause_reason": PauseReason.USER,
                "version": 1,
            }
        )

        assert await repo.save_subscription(paused, expected_version=0)
        assert not await repo.save_subscription(paused.model_copy(update={"version": 2}), expected_version=0)

        loaded = await repo.get_subscription(subscription.id)
        assert loaded.status is SubscriptionStatus.PAUSED
        assert loaded.version == 1

    @pytest.mark.asyncio
    async def test_save_keeps_given_updated_at(self, repo, subscription):
        stamped = NOW + timedelta(days=3)
        paused = subscription.model_copy(
            update={
                "status": SubscriptionStatus.PAUSED,
                "paused_date": stamped,
                "pause_reason": PauseReason.USER,
                "version": 1,
                "updated_at": stamped,
            }
        )

        await repo.save_subscription(paused, expected_version=0)

        assert (await repo.get_subscription(subscription.id)).updated_at == stamped

    @pytest.mark.asyncio
    async def test_history_appended_with_save(self, repo, subscription):
        cancelled = subscription.model_copy(
            update={"status": SubscriptionStatus.CANCELLED, "cancelled_date": NOW, "version": 1}
        )
        history = SubscriptionStatusHistory(
            subscription_id=subscription.id,
            from_status=SubscriptionStatus.ACTIVE,
            to_status=SubscriptionStatus.CANCELLED,
            changed_at=NOW + timedelta(minutes=1),
        )

        await repo.save_subscription(cancelled, expected_version=0, history=history)

        rows = await repo.list_status_history(subscription.id)
        assert [r.to_status for r in rows] == [SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_find_live_and_due(self, repo, subscription, plan):
        assert (await repo.find_live_subscription("patient-1", plan.id)).id == subscription.id
        assert await repo.list_due_subscriptions(NOW) == []

        due = await repo.list_due_subscriptions(NOW + timedelta(days=31))
        assert [s.id for s in due] == [subscription.id]

    @pytest.mark.asyncio
    async def test_processor_id_lookup(self, repo, subscription):
        linked = subscription.model_copy(update={"processor_subscription_id": "sub_stripe_1", "version": 1})
        await repo.save_subscription(linked, expected_version=0)

        assert (await repo.get_subscription_by_processor_id("sub_stripe_1")).id == subscription.id
        assert await repo.get_subscription_by_processor_id("sub_other") is None


@pytest.mark.integration
class TestUsageCounters:
    """Bounded usage increments."""

    @pytest.mark.asyncio
    async def test_increment_never_exceeds_allowance(self, repo, subscription):
        assert await repo.increment_usage(subscription.id, "Teleconsultation", None, 3, 5)
        assert await repo.increment_usage(subscription.id, "Teleconsultation", None, 2, 5)
        assert not await repo.increment_usage(subscription.id, "Teleconsultation", None, 1, 5)

        usage = await repo.get_usage(subscription.id, "Teleconsultation")
        assert usage.used_value == 5

    @pytest.mark.asyncio
    async def test_first_use_above_allowance_rejected(self, repo, subscription):
        assert not await repo.increment_usage(subscription.id, "Teleconsultation", None, 6, 5)
        assert await repo.get_usage(subscription.id, "Teleconsultation") is None

    @pytest.mark.asyncio
    async def test_reset_usage(self, repo, subscription):
        await repo.increment_usage(subscription.id, "Teleconsultation", None, 4, 5)

        assert await repo.reset_usage(subscription.id) == 1
        assert (await repo.get_usage(subscription.id, "Teleconsultation")).used_value == 0

    @pytest.mark.asyncio
    async def test_sequential_increments_stop_at_allowance(self, repo, subscription):
        results = [
            await repo.increment_usage(subscription.id, "Teleconsultation", None, 1, 5) for _ in range(8)
        ]

        assert results.count(True) == 5


@pytest.mark.integration
class TestBillingRecords:
    """Billing records are unique per idempotency key."""

    @pytest.mark.asyncio
    async def test_duplicate_key_returns_existing(self, repo, subscription):
        first = BillingRecord(
            subscription_id=subscription.id,
            user_id="patient-1",
            amount=Decimal("20.00"),
            idempotency_key="inv_123",
            status=BillingStatus.PAID,
        )
        second = first.model_copy(update={"id": "other-id", "amount": Decimal("99.00")})

        stored, created = await repo.add_billing_record(first)
        again, created_again = await repo.add_billing_record(second)

        assert created and not created_again
        assert again.id == stored.id
        assert again.amount == Decimal("20.00")
        assert len(await repo.list_billing_records(subscription.id)) == 1

    @pytest.mark.asyncio
    async def test_update_billing_record(self, repo, subscription):
        record, _ = await repo.add_billing_record(
            BillingRecord(
                subscription_id=subscription.id,
                user_id="patient-1",
                amount=Decimal("20.00"),
                idempotency_key="renewal:1",
            )
        )

        await repo.update_billing_record(
            record.model_copy(update={"status": BillingStatus.FAILED, "failure_reason": "declined"})
        )

        loaded = await repo.get_billing_record_by_key("renewal:1")
        assert loaded.status is BillingStatus.FAILED
        assert loaded.failure_reason == "declined"

    @pytest.mark.asyncio
    async def test_compare_and_set_requires_expected_status(self, repo, subscription):
        record, _ = await repo.add_billing_record(
            BillingRecord(
                subscription_id=subscription.id,
                user_id="patient-1",
                amount=Decimal("20.00"),
                idempotency_key="renewal:2",
                claimed_at=NOW,
            )
        )
        abandoned = record.model_copy(
            update={"status": BillingStatus.ABANDONED, "failure_reason": "interrupted"}
        )

        assert await repo.compare_and_set_billing_record(abandoned, BillingStatus.PENDING)
        assert not await repo.compare_and_set_billing_record(abandoned, BillingStatus.PENDING)

        loaded = await repo.get_billing_record(record.id)
        assert loaded.status is BillingStatus.ABANDONED
        assert loaded.claimed_at == NOW

    @pytest.mark.asyncio
    async def test_list_by_status(self, repo, subscription):
        for key, status in (("a", BillingStatus.PENDING), ("b", BillingStatus.PAID), ("c", BillingStatus.ABANDONED)):
            await repo.add_billing_record(
                BillingRecord(
                    subscription_id=subscription.id,
                    user_id="patient-1",
                    amount=Decimal("20.00"),
                    idempotency_key=key,
                    status=status,
                )
            )

        records = await repo.list_billing_records_by_status([BillingStatus.PENDING, BillingStatus.ABANDONED])

        assert sorted(r.idempotency_key for r in records) == ["a", "c"]


@pytest.mark.integration
class TestWebhookEventStore:
    """Event-id dedup claims."""

    @pytest.mark.asyncio
    async def test_claim_lifecycle(self, store):
        outcome, _ = await store.claim("evt_1", "invoice.payment_succeeded", {"id": "evt_1"}, NOW, 60)
        assert outcome is ClaimOutcome.NEW

        outcome, _ = await store.claim("evt_1", "invoice.payment_succeeded", {}, NOW, 60)
        assert outcome is ClaimOutcome.PROCESSING

        await store.record_attempt("evt_1", None, NOW)
        await store.mark_processed("evt_1", NOW)

        outcome, record = await store.claim("evt_1", "invoice.payment_succeeded", {}, NOW, 60)
        assert outcome is ClaimOutcome.PROCESSED
        assert record.attempts == 1

    @pytest.mark.asyncio
    async def test_failed_event_can_be_reclaimed(self, store):
        await store.claim("evt_1", "invoice.payment_succeeded", {}, NOW, 60)
        await store.record_attempt("evt_1", "processor unavailable", NOW)
        await store.mark_failed("evt_1", "processor unavailable", NOW)

        [failed] = await store.list_failed()
        assert failed.event_id == "evt_1"
        assert failed.last_error == "processor unavailable"

        outcome, record = await store.claim("evt_1", "invoice.payment_succeeded", {}, NOW, 60)
        assert outcome is ClaimOutcome.RETRY
        assert record.status is WebhookEventStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_purge_processed(self, store):
        await store.claim("evt_old", "t", {}, NOW, 60)
        await store.mark_processed("evt_old", NOW)
        await store.claim("evt_failed", "t", {}, NOW, 60)
        await store.mark_failed("evt_failed", "boom", NOW)

        purged = await store.purge_processed(NOW + timedelta(days=1))

        assert purged == 1
        assert await store.get("evt_old") is None
        assert await store.get("evt_failed") is not None
