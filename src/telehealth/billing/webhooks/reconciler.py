"""
Webhook reconciler.

Consumes payment processor events under at-least-once delivery. Each event
is authenticated, claimed in the dedup store by its event id, dispatched by
type and marked processed. Redelivery of a processed event id is a no-op
that reports success.

Retryable failures (processor unavailable, optimistic-lock conflicts) are
retried up to ``webhook.max_attempts`` times; attempt ``k`` waits
``base_delay_seconds * k``. Once attempts are exhausted, or on a
non-retryable failure, the event is marked failed and stays listed by
``failed_events()`` for operator follow-up.

Handlers never assume causal ordering: status syncs compare before acting
and billing records are keyed by invoice id.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_incrementing

from telehealth.billing.config import BillingConfig
from telehealth.billing.exceptions import (
    BillingError,
    ConcurrentOperationError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    WebhookError,
    WebhookProcessingError,
)
from telehealth.billing.interfaces import WebhookVerifier
from telehealth.billing.metrics import BillingMetrics, get_billing_metrics
from telehealth.billing.models import (
    ClaimOutcome,
    Subscription,
    SubscriptionStatus,
    WebhookEventRecord,
    utcnow,
)
from telehealth.billing.money_utils import amount_from_minor_units
from telehealth.billing.orchestrator import BillingOrchestrator
from telehealth.billing.repositories import SubscriptionRepository, WebhookEventStore
from telehealth.billing.state_machine import SubscriptionStateMachine
from telehealth.billing.webhooks.models import PROCESSOR_STATUS_MAP, EventType, ProcessorEvent
from telehealth.core.result import Result

logger = structlog.get_logger(__name__)

Handler = Callable[[ProcessorEvent], Awaitable[Result[str]]]


@dataclass(slots=True)
class WebhookOutcome:
    """What handling one delivery did."""

    event_id: str
    event_type: str
    action: str
    duplicate: bool = False


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, BillingError) and error.retryable


async def purge_processed_events(store: WebhookEventStore, retention_days: int, now: datetime) -> int:
    """Drop processed dedup entries older than ``retention_days`` before ``now``.

    Failed entries are kept for operator follow-up.
    """
    cutoff = now - timedelta(days=retention_days)
    purged = await store.purge_processed(cutoff)
    logger.info("Processed webhook events purged", purged=purged, cutoff=cutoff.isoformat())
    return purged


class WebhookReconciler:
    """Applies processor events to local subscription and billing state."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        store: WebhookEventStore,
        state_machine: SubscriptionStateMachine,
        orchestrator: BillingOrchestrator,
        verifier: WebhookVerifier,
        config: BillingConfig | None = None,
        metrics: BillingMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.store = store
        self.state_machine = state_machine
        self.orchestrator = orchestrator
        self.verifier = verifier
        self.config = config or BillingConfig()
        self.metrics = metrics or get_billing_metrics()
        self.clock = clock
        self.sleep = sleep

        self._handlers: dict[str, Handler] = {
            EventType.SUBSCRIPTION_CREATED: self._sync_subscription,
            EventType.SUBSCRIPTION_UPDATED: self._sync_subscription,
            EventType.SUBSCRIPTION_DELETED: self._subscription_deleted,
            EventType.INVOICE_PAYMENT_SUCCEEDED: self._invoice_paid,
            EventType.INVOICE_PAYMENT_FAILED: self._invoice_failed,
            EventType.PAYMENT_INTENT_SUCCEEDED: self._acknowledge,
            EventType.PAYMENT_INTENT_FAILED: self._acknowledge,
            EventType.SUBSCRIPTION_TRIAL_WILL_END: self._acknowledge,
            EventType.INVOICE_PAYMENT_ACTION_REQUIRED: self._acknowledge,
        }

    @property
    def lease_seconds(self) -> float:
        """How long a claimed event is considered in flight before it can be reclaimed."""
        webhook = self.config.webhook
        total_wait = webhook.base_delay_seconds * webhook.max_attempts * (webhook.max_attempts - 1) / 2
        return total_wait + self.config.renewal.charge_timeout_seconds * webhook.max_attempts + 60

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle(self, payload: bytes | str, signature_header: str | None) -> Result[WebhookOutcome]:
        """Verify, deduplicate and apply one raw webhook delivery."""
        try:
            self.verifier.verify(payload, signature_header)
            event = ProcessorEvent.parse(payload)
        except WebhookError as e:
            self.metrics.record_webhook("unknown", "rejected")
            logger.warning("Webhook delivery rejected", error_code=e.error_code, error=e.message)
            return Result.failure(e)
        return await self.process(event)

    async def process(self, event: ProcessorEvent) -> Result[WebhookOutcome]:
        """Apply an already authenticated event."""
        log = logger.bind(event_id=event.id, event_type=event.type)

        outcome, _ = await self.store.claim(
            event.id, event.type, event.model_dump(mode="json"), self.clock(), self.lease_seconds
        )
        if outcome is ClaimOutcome.PROCESSED:
            self.metrics.record_webhook(event.type, "duplicate")
            log.info("Duplicate webhook delivery ignored")
            return Result.success(WebhookOutcome(event.id, event.type, "duplicate", duplicate=True))
        if outcome is ClaimOutcome.PROCESSING:
            self.metrics.record_webhook(event.type, "in_progress")
            log.warning("Webhook event is already being processed")
            return Result.failure(ConcurrentOperationError(event.id))
        if outcome is ClaimOutcome.RETRY:
            log.info("Reprocessing previously failed webhook event")

        handler = self._handlers.get(event.type)
        if handler is None:
            await self.store.mark_processed(event.id, self.clock())
            self.metrics.record_webhook(event.type, "ignored")
            log.info("Unrecognized webhook event type acknowledged")
            return Result.success(WebhookOutcome(event.id, event.type, "ignored"))

        max_attempts = self.config.webhook.max_attempts
        base_delay = self.config.webhook.base_delay_seconds
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_incrementing(start=base_delay, increment=base_delay),
                retry=retry_if_exception(_is_retryable),
                sleep=self.sleep,
                reraise=True,
            ):
                with attempt:
                    attempts += 1
                    action = await self._attempt(event, handler)
        except BillingError as e:
            return await self._fail(event, e, attempts)
        except Exception as e:
            await self.store.mark_failed(event.id, f"{type(e).__name__}: {e}", self.clock())
            self.metrics.record_webhook(event.type, "failed")
            log.exception("Webhook handler raised unexpectedly", attempts=attempts)
            raise

        await self.store.mark_processed(event.id, self.clock())
        self.metrics.record_webhook(event.type, "processed")
        log.info("Webhook event processed", action=action, attempts=attempts)
        return Result.success(WebhookOutcome(event.id, event.type, action))

    async def failed_events(self) -> list[WebhookEventRecord]:
        """Events that exhausted their attempts and await operator attention."""
        return await self.store.list_failed()

    async def purge_processed(self, now: datetime | None = None) -> int:
        """Drop processed dedup entries older than the retention window."""
        return await purge_processed_events(
            self.store, self.config.webhook.retention_days, now or self.clock()
        )

    # ------------------------------------------------------------------
    # Attempt bookkeeping
    # ------------------------------------------------------------------

    async def _attempt(self, event: ProcessorEvent, handler: Handler) -> str:
        result = await handler(event)
        if result.is_failure:
            error = result.error
            await self.store.record_attempt(event.id, error.message, self.clock())
            if error.retryable:
                logger.warning(
                    "Webhook attempt failed, will retry",
                    event_id=event.id,
                    event_type=event.type,
                    error_code=error.error_code,
                )
            raise error
        await self.store.record_attempt(event.id, None, self.clock())
        return result.unwrap()

    async def _fail(self, event: ProcessorEvent, error: BillingError, attempts: int) -> Result[WebhookOutcome]:
        await self.store.mark_failed(event.id, error.message, self.clock())
        self.metrics.record_webhook(event.type, "failed")
        logger.error(
            "Webhook event failed and needs operator attention",
            event_id=event.id,
            event_type=event.type,
            attempts=attempts,
            error_code=error.error_code,
            error=error.message,
        )
        processing_error = WebhookProcessingError(
            f"Webhook event {event.id} failed after {attempts} attempt(s): {error.message}",
            event.id,
            attempts,
        )
        processing_error.__cause__ = error
        return Result.failure(processing_error)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _find_subscription(self, event: ProcessorEvent) -> Result[Subscription]:
        local_id = event.metadata.get("subscription_id")
        if local_id:
            subscription = await self.repository.get_subscription(local_id)
            if subscription is not None:
                return Result.success(subscription)

        processor_id = event.processor_subscription_id
        if processor_id:
            subscription = await self.repository.get_subscription_by_processor_id(processor_id)
            if subscription is not None:
                return Result.success(subscription)

        return Result.failure(SubscriptionNotFoundError(local_id or processor_id or "unknown"))

    async def _sync_subscription(self, event: ProcessorEvent) -> Result[str]:
        found = await self._find_subscription(event)
        if found.is_failure:
            return Result.failure(found.error)
        subscription = found.unwrap()

        linked = await self.state_machine.link_processor(
            subscription.id,
            processor_subscription_id=event.obj.get("id"),
            processor_customer_id=event.obj.get("customer"),
        )
        if linked.is_failure:
            return Result.failure(linked.error)
        subscription = linked.unwrap()

        target = PROCESSOR_STATUS_MAP.get(str(event.obj.get("status") or ""))
        if target is None or target is subscription.status:
            return Result.success("unchanged")
        if subscription.status.is_terminal:
            logger.warning(
                "Processor status ignored for terminated subscription",
                subscription_id=subscription.id,
                local_status=subscription.status.value,
                processor_status=target.value,
            )
            return Result.success("ignored")

        if target is SubscriptionStatus.ACTIVE:
            result = await self.state_machine.confirm_payment(subscription.id)
        elif target is SubscriptionStatus.PAUSED:
            result = await self.state_machine.pause(subscription.id, reason="paused at payment processor")
        elif target is SubscriptionStatus.CANCELLED:
            result = await self.state_machine.cancel(subscription.id, reason="cancelled at payment processor")
        else:
            result = await self.state_machine.expire(subscription.id, reason="expired at payment processor")
        return await self._settled(subscription.id, target, result)

    async def _subscription_deleted(self, event: ProcessorEvent) -> Result[str]:
        found = await self._find_subscription(event)
        if found.is_failure:
            return Result.failure(found.error)
        subscription = found.unwrap()

        if subscription.status.is_terminal:
            return Result.success("unchanged")
        result = await self.state_machine.cancel(
            subscription.id, reason="subscription deleted at payment processor"
        )
        return await self._settled(subscription.id, SubscriptionStatus.CANCELLED, result)

    async def _settled(
        self, subscription_id: str, target: SubscriptionStatus, result: Result[Subscription]
    ) -> Result[str]:
        """Treat a rejected sync as done when the subscription already reached ``target``."""
        if result.is_success:
            return Result.success("synced")
        if isinstance(result.error, SubscriptionStateError):
            current = await self.repository.get_subscription(subscription_id)
            if current is not None and (current.status is target or current.status.is_terminal):
                return Result.success("unchanged")
        return Result.failure(result.error)

    async def _invoice_paid(self, event: ProcessorEvent) -> Result[str]:
        invoice_id = event.require("id")
        found = await self._find_subscription(event)
        if found.is_failure:
            return Result.failure(found.error)
        subscription = found.unwrap()

        currency = str(event.obj.get("currency") or subscription.currency).upper()
        amount = amount_from_minor_units(event.minor_amount("amount_paid"), currency)
        transaction_id = event.obj.get("charge") or event.obj.get("payment_intent")

        result = await self.orchestrator.apply_processor_payment(
            subscription, invoice_id, amount, currency, transaction_id
        )
        if result.is_failure:
            return Result.failure(result.error)
        return Result.success("payment_recorded")

    async def _invoice_failed(self, event: ProcessorEvent) -> Result[str]:
        invoice_id = event.require("id")
        found = await self._find_subscription(event)
        if found.is_failure:
            return Result.failure(found.error)
        subscription = found.unwrap()

        currency = str(event.obj.get("currency") or subscription.currency).upper()
        amount = amount_from_minor_units(event.minor_amount("amount_due"), currency)
        attempt_count = event.obj.get("attempt_count") or 1
        last_error = event.obj.get("last_payment_error") or event.obj.get("last_finalization_error")
        reason = "Invoice payment failed"
        if isinstance(last_error, dict) and last_error.get("message"):
            reason = str(last_error["message"])

        result = await self.orchestrator.apply_processor_failure(
            subscription, invoice_id, attempt_count, amount, currency, reason
        )
        if result.is_failure:
            return Result.failure(result.error)
        return Result.success("failure_recorded")

    async def _acknowledge(self, event: ProcessorEvent) -> Result[str]:
        logger.info(
            "Webhook event acknowledged",
            event_id=event.id,
            event_type=event.type,
            object_id=event.obj.get("id"),
        )
        return Result.success("logged")
