"""
Webhook signature verification.
"""

import stripe
import structlog

from telehealth.billing.exceptions import WebhookSignatureError

logger = structlog.get_logger(__name__)


class StripeWebhookVerifier:
    """Verifies the ``Stripe-Signature`` header of a raw webhook body."""

    def __init__(self, webhook_secret: str, tolerance_seconds: int = 300) -> None:
        if not webhook_secret:
            raise ValueError("Webhook secret must be configured")
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds

    def verify(self, payload: bytes | str, signature_header: str | None) -> None:
        if not signature_header:
            raise WebhookSignatureError("Missing webhook signature")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            raise WebhookSignatureError("Webhook payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                body, signature_header, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature rejected", error=str(e))
            raise WebhookSignatureError() from e
