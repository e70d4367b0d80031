"""
Mid-cycle plan change proration.

The credit for the unused part of the current cycle is computed first and
truncated to currency precision; the charge is the new price minus that
credit. The charge is never computed independently, so
``credit + charge == new_price`` holds exactly.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from telehealth.billing.models import Subscription
from telehealth.billing.money_utils import truncate_amount


@dataclass(frozen=True, slots=True)
class Proration:
    """Credit and charge legs of a plan change."""

    old_price: Decimal
    new_price: Decimal
    days_remaining: int
    days_in_cycle: int
    credit: Decimal
    charge: Decimal
    currency: str

    @property
    def requires_payment(self) -> bool:
        return self.charge > 0


def compute_proration(
    subscription: Subscription,
    new_price: Decimal,
    now: datetime,
) -> Proration:
    """Prorate a change from ``subscription.current_price`` to ``new_price`` at ``now``.

    ``days_in_cycle`` is the calendar length of the current cycle and
    ``days_remaining`` the whole days left until ``next_billing_date``,
    clamped to ``[0, days_in_cycle]``.
    """
    cycle_end = subscription.next_billing_date
    cycle_start = subscription.current_cycle_start()
    days_in_cycle = max((cycle_end.date() - cycle_start.date()).days, 1)
    days_remaining = (cycle_end.date() - now.date()).days
    days_remaining = min(max(days_remaining, 0), days_in_cycle)

    old_price = subscription.current_price
    raw_credit = old_price * Decimal(days_remaining) / Decimal(days_in_cycle)
    credit = truncate_amount(raw_credit, subscription.currency)
    charge = new_price - credit

    return Proration(
        old_price=old_price,
        new_price=new_price,
        days_remaining=days_remaining,
        days_in_cycle=days_in_cycle,
        credit=credit,
        charge=charge,
        currency=subscription.currency,
    )
