"""Stripe card gateway adapter (PaymentIntents, automatic capture)."""

import logging
from collections.abc import Mapping
from uuid import UUID

import stripe

from consultpay.config import settings
from consultpay.core.exceptions import GatewayRejected, GatewayUnavailable, ValidationError
from consultpay.gateways.base import (
    CheckoutSession,
    CustomerDetails,
    GatewayStatus,
    GatewayType,
    NormalizedStatus,
    PaymentGateway,
    RefundResult,
    WebhookEvent,
    lower_headers,
)

logger = logging.getLogger(__name__)

INTENT_STATUS_MAP = {
    "succeeded": NormalizedStatus.PAID,
    "processing": NormalizedStatus.PENDING,
    "requires_payment_method": NormalizedStatus.PENDING,
    "requires_confirmation": NormalizedStatus.PENDING,
    "requires_action": NormalizedStatus.PENDING,
    "requires_capture": NormalizedStatus.PENDING,
    "canceled": NormalizedStatus.CANCELLED,
}

WEBHOOK_EVENTS = {
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "payment_intent.processing",
}


def normalize_intent_status(intent_status: str | None) -> NormalizedStatus:
    return INTENT_STATUS_MAP.get(intent_status or "", NormalizedStatus.FAILED)


class StripeGateway(PaymentGateway):
    """Stripe payment gateway implementation."""

    gateway_name = "stripe"

    def __init__(self, secret_key: str | None = None, webhook_secret: str | None = None):
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STRIPE

    @property
    def is_live(self) -> bool:
        return bool(self.secret_key and self.secret_key.startswith("sk_live"))

    def _configure(self) -> None:
        if not self.secret_key:
            raise GatewayRejected(self.gateway_name, "Stripe is not configured")
        stripe.api_key = self.secret_key

    def _classify(self, error: stripe.StripeError) -> Exception:
        if isinstance(
            error,
            (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError),
        ):
            return GatewayUnavailable(self.gateway_name, str(error.user_message or error))
        return GatewayRejected(self.gateway_name, str(error.user_message or error))

    async def create_session(
        self,
        booking_id: UUID,
        amount: int,
        currency: str,
        customer: CustomerDetails,
    ) -> CheckoutSession:
        self._configure()
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency.lower(),
                description=f"Consultation booking {booking_id}",
                receipt_email=customer.email,
                automatic_payment_methods={"enabled": True},
                metadata={"booking_id": str(booking_id), "customer_id": customer.customer_id},
                idempotency_key=f"intent-{booking_id}-{amount}",
            )
        except stripe.StripeError as e:
            raise self._classify(e)

        return CheckoutSession(
            order_id=intent.id,
            client_secret=intent.client_secret,
            raw={"id": intent.id, "status": intent.status},
        )

    async def verify_status(self, order_id: str) -> GatewayStatus:
        self._configure()
        try:
            intent = stripe.PaymentIntent.retrieve(order_id)
        except stripe.StripeError as e:
            raise self._classify(e)

        return GatewayStatus(
            order_id=order_id,
            status=normalize_intent_status(intent.status),
            amount=intent.amount_received or intent.amount,
            capture_id=intent.latest_charge if isinstance(intent.latest_charge, str) else None,
            gateway_status=intent.status,
            raw={"id": intent.id, "status": intent.status},
        )

    async def refund(
        self,
        order_id: str,
        capture_id: str | None,
        amount: int,
        reason: str,
    ) -> RefundResult:
        self._configure()
        try:
            refund = stripe.Refund.create(
                payment_intent=order_id,
                amount=amount,
                reason="requested_by_customer",
                metadata={"reason": reason[:500]},
                idempotency_key=f"refund-{order_id}",
            )
        except stripe.StripeError as e:
            raise self._classify(e)

        return RefundResult(
            refund_id=refund.id,
            status=refund.status,
            raw={"id": refund.id, "status": refund.status},
        )

    async def parse_webhook(
        self,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> WebhookEvent | None:
        if not self.webhook_secret:
            raise ValidationError("Stripe webhook secret is not configured")

        signature = lower_headers(headers).get("stripe-signature")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError:
            raise ValidationError("Invalid Stripe webhook payload")
        except stripe.SignatureVerificationError:
            raise ValidationError("Invalid Stripe webhook signature")

        if event["type"] not in WEBHOOK_EVENTS:
            return None

        return WebhookEvent(
            gateway=self.gateway_name,
            reference=event["data"]["object"]["id"],
            event_type=event["type"],
            raw={"id": event["id"], "type": event["type"]},
        )
