"""
Billing module metrics
"""

import time
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import metrics
from opentelemetry.metrics import Counter, Histogram, Meter

from telehealth.settings import settings


class BillingMetrics:
    """Billing metrics collector"""

    def __init__(self, meter: Meter | None = None) -> None:
        self.meter = meter or metrics.get_meter(
            settings.observability.otel_service_name, settings.app_version
        )

        # Charge metrics
        self.charge_counter = self._create_counter(
            name="billing.charge.attempts",
            description="Charge attempts by outcome",
        )
        self.charge_duration_histogram = self._create_histogram(
            name="billing.charge.duration",
            description="Payment processor call duration",
            unit="ms",
        )

        # Subscription metrics
        self.transition_counter = self._create_counter(
            name="billing.subscription.transitions",
            description="Subscription status changes by target status",
        )
        self.consumption_rejected_counter = self._create_counter(
            name="billing.entitlement.rejected",
            description="Rejected privilege consumptions",
        )

        # Webhook metrics
        self.webhook_counter = self._create_counter(
            name="billing.webhook.events",
            description="Webhook events by outcome",
        )

    def record_charge(self, outcome: str, billing_type: str, currency: str) -> None:
        """Record a charge attempt"""
        self.charge_counter.add(
            1, {"outcome": outcome, "billing_type": billing_type, "currency": currency}
        )

    @contextmanager
    def time_charge(self, billing_type: str) -> Iterator[None]:
        """Measure one processor call"""
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.charge_duration_histogram.record(elapsed_ms, {"billing_type": billing_type})

    def record_transition(self, to_status: str) -> None:
        """Record a status change"""
        self.transition_counter.add(1, {"to_status": to_status})

    def record_consumption_rejected(self, privilege_name: str, reason: str) -> None:
        """Record a rejected entitlement consumption"""
        self.consumption_rejected_counter.add(
            1, {"privilege_name": privilege_name, "reason": reason}
        )

    def record_webhook(self, event_type: str, outcome: str) -> None:
        """Record a webhook handling outcome"""
        self.webhook_counter.add(1, {"event_type": event_type, "outcome": outcome})

    def _create_counter(self, name: str, description: str, unit: str = "1") -> Counter:
        return self.meter.create_counter(name=name, description=description, unit=unit)

    def _create_histogram(self, name: str, description: str, unit: str = "1") -> Histogram:
        return self.meter.create_histogram(name=name, description=description, unit=unit)


_billing_metrics: BillingMetrics | None = None


def get_billing_metrics() -> BillingMetrics:
    """Get the global billing metrics instance"""
    global _billing_metrics
    if _billing_metrics is None:
        _billing_metrics = BillingMetrics()
    return _billing_metrics


def set_billing_metrics(billing_metrics: BillingMetrics | None) -> None:
    """Set the global billing metrics instance"""
    global _billing_metrics
    _billing_metrics = billing_metrics
