"""
Tests for payment processor webhook reconciliation.

Covers signature checks, event-id deduplication, invoice keyed billing
records, status sync, bounded retries and the failed-event listing.
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

from telehealth.billing.config import BillingConfig, StripeConfig
from telehealth.billing.exceptions import (
    ConcurrentOperationError,
    TransientProcessorError,
    WebhookPayloadError,
    WebhookProcessingError,
    WebhookSignatureError,
)
from telehealth.billing.metrics import BillingMetrics
from telehealth.billing.models import (
    BillingStatus,
    BillingType,
    PauseReason,
    SubscriptionStatus,
    WebhookEventStatus,
)
from telehealth.billing.service import build_engine
from telehealth.billing.webhooks import EventType, ProcessorEvent, StripeWebhookVerifier
from telehealth.core.result import Result


def _event(event_id: str, event_type: str, obj: dict) -> str:
    return json.dumps(
        {"id": event_id, "type": event_type, "created": 1743508800, "data": {"object": obj}}
    )


def _invoice_paid(event_id: str, subscription_id: str, invoice_id: str = "inv_123", amount: int = 2000) -> str:
    return _event(
        event_id,
        EventType.INVOICE_PAYMENT_SUCCEEDED,
        {
            "id": invoice_id,
            "amount_paid": amount,
            "currency": "usd",
            "charge": "ch_1",
            "metadata": {"subscription_id": subscription_id},
        },
    )


def _invoice_records(repository, subscription_id):
    return [
        r
        for r in repository.billing_records.values()
        if r.subscription_id == subscription_id and r.billing_type is BillingType.PROCESSOR_INVOICE
    ]


def _flaky_payments(monkeypatch, orchestrator, failures: int):
    """Make ``apply_processor_payment`` fail transiently ``failures`` times."""
    original = orchestrator.apply_processor_payment
    calls = {"count": 0}

    async def flaky(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] <= failures:
            return Result.failure(TransientProcessorError("Payment processor unavailable"))
        return await original(*args, **kwargs)

    monkeypatch.setattr(orchestrator, "apply_processor_payment", flaky)
    return calls


@pytest.mark.unit
class TestAuthentication:
    """Deliveries are authenticated and parsed before anything else."""

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, engine, subscription, webhook_store):
        result = await engine.reconciler.handle(_invoice_paid("evt_1", subscription.id), "t=1,v1=forged")

        assert isinstance(result.error, WebhookSignatureError)
        assert result.error.status_code == 401
        assert webhook_store.events == {}

    @pytest.mark.asyncio
    async def test_malformed_payload_rejected(self, engine, valid_signature, webhook_store):
        result = await engine.reconciler.handle(b'{"type": "invoice.payment_succeeded"}', valid_signature)

        assert isinstance(result.error, WebhookPayloadError)
        assert webhook_store.events == {}

    @pytest.mark.asyncio
    async def test_invalid_json_rejected(self, engine, valid_signature):
        result = await engine.reconciler.handle(b"not json", valid_signature)

        assert isinstance(result.error, WebhookPayloadError)


@pytest.mark.unit
class TestStripeWebhookVerifier:
    """Verification of real Stripe signature headers."""

    @staticmethod
    def _header(payload: str, secret: str, timestamp: int | None = None) -> str:
        timestamp = timestamp or int(time.time())
        signed = f"{timestamp}.{payload}".encode()
        signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    def test_valid_signature(self):
        verifier = StripeWebhookVerifier("whsec_test")
        payload = _event("evt_1", EventType.PAYMENT_INTENT_SUCCEEDED, {"id": "pi_1"})

        verifier.verify(payload.encode(), self._header(payload, "whsec_test"))

    def test_wrong_secret(self):
        verifier = StripeWebhookVerifier("whsec_test")
        payload = _event("evt_1", EventType.PAYMENT_INTENT_SUCCEEDED, {"id": "pi_1"})

        with pytest.raises(WebhookSignatureError):
            verifier.verify(payload, self._header(payload, "whsec_other"))

    def test_stale_timestamp(self):
        verifier = StripeWebhookVerifier("whsec_test", tolerance_seconds=300)
        payload = _event("evt_1", EventType.PAYMENT_INTENT_SUCCEEDED, {"id": "pi_1"})

        with pytest.raises(WebhookSignatureError):
            verifier.verify(payload, self._header(payload, "whsec_test", int(time.time()) - 3600))

    def test_missing_header(self):
        with pytest.raises(WebhookSignatureError, match="Missing webhook signature"):
            StripeWebhookVerifier("whsec_test").verify("{}", None)

    def test_secret_required(self):
        with pytest.raises(ValueError):
            StripeWebhookVerifier("")

    @pytest.mark.asyncio
    async def test_engine_uses_stripe_verifier_from_config(
        self, repository, webhook_store, gateway, notifier, users, audit, clock, plan_a
    ):
        config = BillingConfig(stripe=StripeConfig(api_key="sk_test_123", webhook_secret="whsec_test"))
        engine = build_engine(
            repository,
            webhook_store,
            gateway,
            notifier,
            users,
            audit=audit,
            config=config,
            metrics=BillingMetrics(),
            clock=clock,
        )
        subscription = (await engine.orchestrator.create_subscription("patient-1", plan_a.id)).unwrap()
        payload = _invoice_paid("evt_signed", subscription.id)

        result = await engine.reconciler.handle(payload, self._header(payload, "whsec_test"))

        assert result.unwrap().action == "payment_recorded"


@pytest.mark.unit
class TestDeduplication:
    """At-least-once delivery is applied at most once."""

    @pytest.mark.asyncio
    async def test_redelivered_invoice_creates_one_record(self, engine, subscription, repository, valid_signature):
        payload = _invoice_paid("evt_1", subscription.id)

        first = (await engine.reconciler.handle(payload, valid_signature)).unwrap()
        second = (await engine.reconciler.handle(payload, valid_signature)).unwrap()

        assert first.action == "payment_recorded" and not first.duplicate
        assert second.duplicate and second.action == "duplicate"
        [record] = _invoice_records(repository, subscription.id)
        assert record.status is BillingStatus.PAID
        assert record.amount == Decimal("20.00")
        assert record.currency == "USD"
        assert record.idempotency_key == "inv_123"
        assert record.transaction_id == "ch_1"

    @pytest.mark.asyncio
    async def test_same_invoice_under_new_event_id(self, engine, subscription, repository, notifier, valid_signature):
        await engine.reconciler.handle(_invoice_paid("evt_1", subscription.id), valid_signature)
        notifier.sent.clear()

        result = await engine.reconciler.handle(_invoice_paid("evt_2", subscription.id), valid_signature)

        assert result.unwrap().action == "payment_recorded"
        assert len(_invoice_records(repository, subscription.id)) == 1
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_event_in_flight_is_not_processed_twice(self, engine, subscription, webhook_store, clock):
        event = ProcessorEvent.parse(_invoice_paid("evt_1", subscription.id))
        await webhook_store.claim(event.id, event.type, {}, clock(), engine.reconciler.lease_seconds)

        result = await engine.reconciler.process(event)

        assert isinstance(result.error, ConcurrentOperationError)

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(self, engine, subscription, webhook_store, clock, repository):
        event = ProcessorEvent.parse(_invoice_paid("evt_1", subscription.id))
        await webhook_store.claim(event.id, event.type, {}, clock(), engine.reconciler.lease_seconds)
        clock.advance(seconds=engine.reconciler.lease_seconds + 1)

        result = await engine.reconciler.process(event)

        assert result.unwrap().action == "payment_recorded"
        assert len(_invoice_records(repository, subscription.id)) == 1


@pytest.mark.unit
class TestInvoiceEvents:
    """Invoice outcomes drive billing records and payment transitions."""

    @pytest.mark.asyncio
    async def test_invoice_paid_reactivates_payment_paused(self, engine, subscription, repository, valid_signature):
        await engine.state_machine.record_payment_failure(subscription.id, "declined")

        await engine.reconciler.handle(_invoice_paid("evt_1", subscription.id), valid_signature)

        stored = await repository.get_subscription(subscription.id)
        assert stored.status is SubscriptionStatus.ACTIVE
        assert stored.failed_payment_attempts == 0

    @pytest.mark.asyncio
    async def test_invoice_payment_failed(self, engine, subscription, repository, notifier, valid_signature):
        payload = _event(
            "evt_fail",
            EventType.INVOICE_PAYMENT_FAILED,
            {
                "id": "inv_9",
                "amount_due": 2000,
                "currency": "usd",
                "attempt_count": 2,
                "last_payment_error": {"message": "Your card has insufficient funds."},
                "metadata": {"subscription_id": subscription.id},
            },
        )

        result = await engine.reconciler.handle(payload, valid_signature)

        assert result.unwrap().action == "failure_recorded"
        stored = await repository.get_subscription(subscription.id)
        assert stored.status is SubscriptionStatus.PAUSED
        assert stored.pause_reason is PauseReason.PAYMENT_FAILED
        [record] = _invoice_records(repository, subscription.id)
        assert record.status is BillingStatus.FAILED
        assert record.idempotency_key == "inv_9:failed:2"
        assert record.failure_reason == "Your card has insufficient funds."
        assert notifier.kinds() == ["payment_failed"]

    @pytest.mark.asyncio
    async def test_late_failure_for_paid_invoice_keeps_active(
        self, engine, subscription, repository, notifier, valid_signature
    ):
        await engine.reconciler.handle(_invoice_paid("evt_paid", subscription.id, "inv_5"), valid_signature)
        late_failure = _event(
            "evt_failed_late",
            EventType.INVOICE_PAYMENT_FAILED,
            {
                "id": "inv_5",
                "amount_due": 2000,
                "currency": "usd",
                "attempt_count": 1,
                "metadata": {"subscription_id": subscription.id},
            },
        )

        result = await engine.reconciler.handle(late_failure, valid_signature)

        assert result.unwrap().action == "failure_recorded"
        stored = await repository.get_subscription(subscription.id)
        assert stored.status is SubscriptionStatus.ACTIVE
        assert stored.failed_payment_attempts == 0
        records = {r.idempotency_key: r.status for r in _invoice_records(repository, subscription.id)}
        assert records == {"inv_5": BillingStatus.PAID, "inv_5:failed:1": BillingStatus.FAILED}
        assert "payment_failed" not in notifier.kinds()

    @pytest.mark.asyncio
    async def test_invoice_for_unknown_subscription_fails_event(self, engine, webhook_store, sleeper, valid_signature):
        result = await engine.reconciler.handle(_invoice_paid("evt_orphan", "missing"), valid_signature)

        assert isinstance(result.error, WebhookProcessingError)
        assert sleeper.delays == []
        stored = webhook_store.events["evt_orphan"]
        assert stored.status is WebhookEventStatus.FAILED
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_invoice_missing_amount_fails_event(self, engine, subscription, webhook_store, valid_signature):
        payload = _event(
            "evt_bad",
            EventType.INVOICE_PAYMENT_SUCCEEDED,
            {"id": "inv_1", "metadata": {"subscription_id": subscription.id}},
        )

        result = await engine.reconciler.handle(payload, valid_signature)

        assert isinstance(result.error, WebhookProcessingError)
        assert webhook_store.events["evt_bad"].status is WebhookEventStatus.FAILED


@pytest.mark.unit
class TestSubscriptionEvents:
    """Processor subscription status sync."""

    @pytest.mark.asyncio
    async def test_status_sync_links_and_pauses(self, engine, subscription, repository, valid_signature):
        payload = _event(
            "evt_upd",
            EventType.SUBSCRIPTION_UPDATED,
            {
                "id": "sub_stripe_1",
                "customer": "cus_1",
                "status": "paused",
                "metadata": {"subscription_id": subscription.id},
            },
        )

        result = await engine.reconciler.handle(payload, valid_signature)

        assert result.unwrap().action == "synced"
        stored = await repository.get_subscription(subscription.id)
        assert stored.status is SubscriptionStatus.PAUSED
        assert stored.processor_subscription_id == "sub_stripe_1"
        assert stored.processor_customer_id == "cus_1"

    @pytest.mark.asyncio
    async def test_matching_status_is_unchanged(self, engine, subscription, valid_signature):
        payload = _event(
            "evt_upd",
            EventType.SUBSCRIPTION_UPDATED,
            {"id": "sub_stripe_1", "status": "active", "metadata": {"subscription_id": subscription.id}},
        )

        result = await engine.reconciler.handle(payload, valid_signature)

        assert result.unwrap().action == "unchanged"

    @pytest.mark.asyncio
    async def test_invoice_matched_by_processor_subscription_id(self, engine, subscription, repository, valid_signature):
        await engine.state_machine.link_processor(subscription.id, "sub_stripe_1")
        payload = _event(
            "evt_inv",
            EventType.INVOICE_PAYMENT_SUCCEEDED,
            {"id": "inv_55", "amount_paid": 2000, "currency": "usd", "subscription": "sub_stripe_1"},
        )

        result = await engine.reconciler.handle(payload, valid_signature)

        assert result.unwrap().action == "payment_recorded"
        assert len(_invoice_records(repository, subscription.id)) == 1

    @pytest.mark.asyncio
    async def test_deleted_cancels(self, engine, subscription, repository, valid_signature):
        await engine.state_machine.link_processor(subscription.id, "sub_stripe_1")
        payload = _event("evt_del", EventType.SUBSCRIPTION_DELETED, {"id": "sub_stripe_1"})

        result = await engine.reconciler.handle(payload, valid_signature)

        assert result.unwrap().action == "synced"
        assert (await repository.get_subscription(subscription.id)).status is SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_late_update_after_delete_is_ignored(self, engine, subscription, repository, valid_signature):
        await engine.state_machine.link_processor(subscription.id, "sub_stripe_1")
        await engine.reconciler.handle(
            _event("evt_del", EventType.SUBSCRIPTION_DELETED, {"id": "sub_stripe_1"}), valid_signature
        )

        late = await engine.reconciler.handle(
            _event("evt_old", EventType.SUBSCRIPTION_UPDATED, {"id": "sub_stripe_1", "status": "active"}),
            valid_signature,
        )

        assert late.unwrap().action == "ignored"
        assert (await repository.get_subscription(subscription.id)).status is SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_unknown_event_type_acknowledged(self, engine, webhook_store, valid_signature):
        result = await engine.reconciler.handle(_event("evt_x", "charge.dispute.created", {"id": "dp_1"}), valid_signature)

        assert result.unwrap().action == "ignored"
        assert webhook_store.events["evt_x"].status is WebhookEventStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_informational_event_logged(self, engine, valid_signature):
        result = await engine.reconciler.handle(
            _event("evt_pi", EventType.PAYMENT_INTENT_SUCCEEDED, {"id": "pi_1"}), valid_signature
        )

        assert result.unwrap().action == "logged"


@pytest.mark.unit
class TestRetries:
    """Bounded retries with linear backoff."""

    @pytest.mark.asyncio
    async def test_transient_failure_retried_with_backoff(
        self, engine, subscription, repository, webhook_store, sleeper, monkeypatch, valid_signature
    ):
        _flaky_payments(monkeypatch, engine.orchestrator, failures=2)

        result = await engine.reconciler.handle(_invoice_paid("evt_1", subscription.id), valid_signature)

        assert result.unwrap().action == "payment_recorded"
        assert sleeper.delays == [5.0, 10.0]
        stored = webhook_store.events["evt_1"]
        assert stored.status is WebhookEventStatus.PROCESSED
        assert stored.attempts == 3
        assert len(_invoice_records(repository, subscription.id)) == 1

    @pytest.mark.asyncio
    async def test_exhausted_attempts_listed_for_operators(
        self, engine, subscription, webhook_store, sleeper, monkeypatch, valid_signature
    ):
        _flaky_payments(monkeypatch, engine.orchestrator, failures=10)

        result = await engine.reconciler.handle(_invoice_paid("evt_1", subscription.id), valid_signature)

        assert isinstance(result.error, WebhookProcessingError)
        assert result.error.context["attempts"] == 3
        assert sleeper.delays == [5.0, 10.0]
        [failed] = await engine.reconciler.failed_events()
        assert failed.event_id == "evt_1"
        assert failed.attempts == 3
        assert failed.last_error == "Payment processor unavailable"

    @pytest.mark.asyncio
    async def test_failed_event_reprocessed_on_redelivery(
        self, engine, subscription, repository, monkeypatch, valid_signature
    ):
        calls = _flaky_payments(monkeypatch, engine.orchestrator, failures=3)
        payload = _invoice_paid("evt_1", subscription.id)
        assert (await engine.reconciler.handle(payload, valid_signature)).is_failure
        assert calls["count"] == 3

        result = await engine.reconciler.handle(payload, valid_signature)

        assert result.unwrap().action == "payment_recorded"
        assert await engine.reconciler.failed_events() == []
        assert len(_invoice_records(repository, subscription.id)) == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_marks_failed_and_propagates(
        self, engine, subscription, webhook_store, monkeypatch, valid_signature
    ):
        async def broken(*args, **kwargs):
            raise RuntimeError("bug")

        monkeypatch.setattr(engine.orchestrator, "apply_processor_payment", broken)

        with pytest.raises(RuntimeError):
            await engine.reconciler.handle(_invoice_paid("evt_1", subscription.id), valid_signature)

        assert webhook_store.events["evt_1"].status is WebhookEventStatus.FAILED


@pytest.mark.unit
class TestRetention:
    """Dedup entries are purged after the retention window."""

    @pytest.mark.asyncio
    async def test_purge_processed_keeps_failed(self, engine, subscription, webhook_store, clock, valid_signature):
        await engine.reconciler.handle(_invoice_paid("evt_ok", subscription.id), valid_signature)
        await engine.reconciler.handle(_invoice_paid("evt_orphan", "missing", "inv_x"), valid_signature)

        clock.advance(days=10)
        assert await engine.reconciler.purge_processed() == 0

        clock.advance(days=21)
        assert await engine.reconciler.purge_processed() == 1
        assert set(webhook_store.events) == {"evt_orphan"}
