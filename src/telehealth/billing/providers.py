"""
Payment processor adapters.

``StripePaymentGateway`` implements ``PaymentGateway`` on the Stripe SDK.
The SDK is synchronous, so calls run in a worker thread. Card errors are
final declines; every other Stripe error is reported as retryable.
"""

import asyncio
from collections.abc import Awaitable, Callable
from decimal import Decimal

import stripe
import structlog

from telehealth.billing.config import StripeConfig
from telehealth.billing.interfaces import ChargeResult, PaymentMethod
from telehealth.billing.money_utils import amount_to_minor_units

logger = structlog.get_logger(__name__)

CustomerLookup = Callable[[str], Awaitable[str | None]]


class StripePaymentGateway:
    """Charges stored customer payment methods through Stripe PaymentIntents."""

    provider = "stripe"

    def __init__(self, config: StripeConfig, customer_lookup: CustomerLookup) -> None:
        self.config = config
        self.customer_lookup = customer_lookup

    def _configure(self) -> None:
        stripe.api_key = self.config.api_key

    async def charge(
        self,
        user_id: str,
        amount: Decimal,
        currency: str,
        *,
        idempotency_key: str,
        description: str | None = None,
    ) -> ChargeResult:
        self._configure()

        customer_id = await self.customer_lookup(user_id)
        if not customer_id:
            return ChargeResult.declined("No payment customer on file for user")

        try:
            customer = await asyncio.to_thread(stripe.Customer.retrieve, customer_id)
            payment_method = (customer.get("invoice_settings") or {}).get("default_payment_method")
            if not payment_method:
                return ChargeResult.declined("No default payment method on file")

            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount_to_minor_units(amount, currency),
                currency=currency.lower(),
                customer=customer_id,
                payment_method=payment_method,
                off_session=True,
                confirm=True,
                description=description,
                metadata={"user_id": user_id, "idempotency_key": idempotency_key},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            logger.info("Stripe card declined", user_id=user_id, code=e.code)
            return ChargeResult.declined(e.user_message or str(e))
        except stripe.StripeError as e:
            logger.warning("Stripe request failed", user_id=user_id, error=str(e))
            return ChargeResult.declined(e.user_message or str(e), retryable=True)

        status = intent.get("status")
        if status == "succeeded":
            return ChargeResult.ok(intent.get("id"))
        if status == "requires_action":
            return ChargeResult.declined("Payment requires customer authentication")
        if status == "processing":
            return ChargeResult.declined("Payment is still processing", retryable=True)
        return ChargeResult.declined(f"Payment not completed (status: {status})")

    async def list_payment_methods(self, user_id: str) -> list[PaymentMethod]:
        self._configure()

        customer_id = await self.customer_lookup(user_id)
        if not customer_id:
            return []

        customer = await asyncio.to_thread(stripe.Customer.retrieve, customer_id)
        default_id = (customer.get("invoice_settings") or {}).get("default_payment_method")
        listing = await asyncio.to_thread(stripe.PaymentMethod.list, customer=customer_id, type="card")

        methods = []
        for pm in listing.get("data", []):
            card = pm.get("card") or {}
            methods.append(
                PaymentMethod(
                    id=pm["id"],
                    type=pm.get("type", "card"),
                    brand=card.get("brand"),
                    last4=card.get("last4"),
                    exp_month=card.get("exp_month"),
                    exp_year=card.get("exp_year"),
                    is_default=pm["id"] == default_id,
                )
            )
        return methods
