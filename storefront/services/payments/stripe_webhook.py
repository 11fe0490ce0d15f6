"""Stripe webhook verification.

Stripe signs every delivery; `stripe.Webhook.construct_event` checks the
signature and its timestamp tolerance before the body is trusted. PaymentIntent
outcomes are mapped onto the same `VerificationResult` the SSLCommerz path
produces, keyed by the Stripe event id, so both gateways share one dedup
ledger and one fulfillment boundary.
"""

import stripe
from pydantic import ValidationError

from storefront.common.config import Settings
from storefront.common.errors import MalformedCallback, VerificationFailed
from storefront.common.logging import logger
from storefront.services.payments.schemas import StripeEvent, StripePaymentIntent, VerificationResult


# Stripe event types that settle a payment, and the callback status each means.
STRIPE_EVENT_STATUS = {
    "payment_intent.succeeded": "VALID",
    "payment_intent.payment_failed": "FAILED",
}


class StripeWebhookVerifier:
    """Authenticates Stripe webhook bodies with the endpoint signing secret."""

    def __init__(self, webhook_secret: str, tolerance_seconds: int = 300) -> None:
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeWebhookVerifier":
        return cls(settings.stripe_webhook_secret, settings.stripe_signature_tolerance_seconds)

    def verify(self, payload: bytes, signature: str | None) -> VerificationResult | None:
        """Check and interpret one webhook delivery.

        Returns None for event types that carry no payment outcome. Raises
        `MalformedCallback` for an unsigned or unparseable body and
        `VerificationFailed` when the signature does not check out.
        """

        if not self.webhook_secret:
            raise VerificationFailed("stripe webhook secret is not configured")
        if not signature:
            raise MalformedCallback("missing stripe signature")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret, tolerance=self.tolerance_seconds)
        except stripe.SignatureVerificationError as exc:
            raise VerificationFailed(f"stripe signature verification failed: {exc}") from exc
        except ValueError as exc:
            raise MalformedCallback(f"stripe webhook body is not valid JSON: {exc}") from exc

        try:
            event = StripeEvent.model_validate_json(payload)
        except ValidationError as exc:
            raise MalformedCallback(f"malformed stripe event: {exc}") from exc
        status = STRIPE_EVENT_STATUS.get(event.type)
        if status is None:
            logger.info("stripe event ignored type=%s stripe_event_id=%s", event.type, event.id)
            return None

        try:
            intent = StripePaymentIntent.model_validate(event.data.object)
        except ValidationError as exc:
            raise MalformedCallback(f"malformed stripe payment intent: {exc}") from exc
        order_id = intent.metadata.get("order_id")
        reason = None if order_id else "payment intent carries no order_id metadata"
        if reason:
            logger.warning("stripe event refused stripe_event_id=%s reason=%s", event.id, reason)
        return VerificationResult(
            valid=reason is None,
            amount_cents=intent.amount_received if status == "VALID" else intent.amount,
            provider_event_id=event.id,
            order_reference=order_id or "",
            status=status,
            transaction_reference=intent.id,
            currency=intent.currency.upper() if intent.currency else None,
            reason=reason,
        )
