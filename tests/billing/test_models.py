"""Tests for billing domain models."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError

from telehealth.billing.models import (
    BillingCycle,
    Plan,
    PrivilegeGrant,
    Subscription,
    SubscriptionStatus,
    add_months,
)


def _subscription(**overrides) -> Subscription:
    values = {
        "user_id": "patient-1",
        "plan_id": "plan-a",
        "current_price": Decimal("20.00"),
        "start_date": datetime(2025, 4, 1, tzinfo=UTC),
        "next_billing_date": datetime(2025, 5, 1, tzinfo=UTC),
    }
    values.update(overrides)
    return Subscription(**values)


@pytest.mark.unit
class TestCalendarArithmetic:
    """Test month arithmetic used for billing dates."""

    def test_add_months_simple(self):
        assert add_months(datetime(2025, 4, 1, tzinfo=UTC), 1) == datetime(2025, 5, 1, tzinfo=UTC)

    def test_add_months_clamps_to_month_end(self):
        """Jan 31 + 1 month lands on the last day of February."""
        assert add_months(datetime(2025, 1, 31, tzinfo=UTC), 1) == datetime(2025, 2, 28, tzinfo=UTC)
        assert add_months(datetime(2024, 1, 31, tzinfo=UTC), 1) == datetime(2024, 2, 29, tzinfo=UTC)

    def test_add_months_crosses_year(self):
        assert add_months(datetime(2025, 11, 15, tzinfo=UTC), 3) == datetime(2026, 2, 15, tzinfo=UTC)
        assert add_months(datetime(2025, 1, 15, tzinfo=UTC), -1) == datetime(2024, 12, 15, tzinfo=UTC)

    def test_billing_cycle_advance(self):
        start = datetime(2025, 4, 1, tzinfo=UTC)
        assert BillingCycle.MONTHLY.advance(start) == datetime(2025, 5, 1, tzinfo=UTC)
        assert BillingCycle.QUARTERLY.advance(start) == datetime(2025, 7, 1, tzinfo=UTC)
        assert BillingCycle.ANNUAL.advance(start) == datetime(2026, 4, 1, tzinfo=UTC)


@pytest.mark.unit
class TestPlan:
    """Test plan pricing and grant lookup."""

    def test_price_for_cycle_falls_back_to_monthly_multiple(self):
        plan = Plan(name="Basic Care", monthly_price=Decimal("20.00"))
        assert plan.price_for(BillingCycle.MONTHLY) == Decimal("20.00")
        assert plan.price_for(BillingCycle.QUARTERLY) == Decimal("60.00")
        assert plan.price_for(BillingCycle.ANNUAL) == Decimal("240.00")

    def test_price_for_cycle_uses_explicit_prices(self):
        plan = Plan(
            name="Basic Care",
            monthly_price=Decimal("20.00"),
            quarterly_price=Decimal("54.00"),
            annual_price=Decimal("200.00"),
        )
        assert plan.price_for(BillingCycle.QUARTERLY) == Decimal("54.00")
        assert plan.price_for(BillingCycle.ANNUAL) == Decimal("200.00")

    def test_grant_lookup(self):
        plan = Plan(
            name="Basic Care",
            monthly_price=Decimal("20.00"),
            grants=[PrivilegeGrant(privilege_name="Teleconsultation", allowance=5)],
        )
        assert plan.grant_for("Teleconsultation").allowance == 5
        assert plan.grant_for("MedicationSupply") is None

    def test_currency_is_uppercased(self):
        assert Plan(name="p", monthly_price=Decimal("1"), currency="eur").currency == "EUR"

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError):
            Plan(name="p", monthly_price=Decimal("-1"))

    def test_negative_allowance_rejected(self):
        with pytest.raises(ValidationError):
            PrivilegeGrant(privilege_name="Teleconsultation", allowance=-1)


@pytest.mark.unit
class TestSubscription:
    """Test subscription derived state."""

    def test_terminal_statuses(self):
        assert SubscriptionStatus.CANCELLED.is_terminal
        assert SubscriptionStatus.EXPIRED.is_terminal
        assert not SubscriptionStatus.ACTIVE.is_terminal
        assert not SubscriptionStatus.PAUSED.is_terminal

    def test_current_cycle_start(self):
        assert _subscription().current_cycle_start() == datetime(2025, 4, 1, tzinfo=UTC)

    def test_dates_consistent(self):
        paused_at = datetime(2025, 4, 10, tzinfo=UTC)
        assert _subscription().dates_consistent()
        assert not _subscription(paused_date=paused_at).dates_consistent()
        assert _subscription(status=SubscriptionStatus.PAUSED, paused_date=paused_at).dates_consistent()
        assert not _subscription(status=SubscriptionStatus.PAUSED).dates_consistent()
        assert _subscription(
            status=SubscriptionStatus.CANCELLED, cancelled_date=paused_at
        ).dates_consistent()
        assert not _subscription(
            status=SubscriptionStatus.CANCELLED, cancelled_date=paused_at, paused_date=paused_at
        ).dates_consistent()
