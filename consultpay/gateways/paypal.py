"""PayPal redirect gateway adapter.

The payer approves the order on PayPal and is redirected back with a
``token`` query parameter equal to the order id; the order must then be
captured before money moves.
"""

import json
import logging
import time
from collections.abc import Mapping
from uuid import UUID

import httpx

from consultpay.config import settings
from consultpay.core.exceptions import GatewayRejected, ValidationError
from consultpay.gateways.base import (
    CheckoutSession,
    CustomerDetails,
    GatewayStatus,
    GatewayType,
    HttpGatewayClient,
    NormalizedStatus,
    PaymentGateway,
    RefundResult,
    WebhookEvent,
    lower_headers,
    to_major_units,
    to_minor_units,
)

logger = logging.getLogger(__name__)

ORDER_STATUS_MAP = {
    "CREATED": NormalizedStatus.PENDING,
    "SAVED": NormalizedStatus.PENDING,
    "APPROVED": NormalizedStatus.PENDING,
    "PAYER_ACTION_REQUIRED": NormalizedStatus.PENDING,
    "VOIDED": NormalizedStatus.CANCELLED,
}

CAPTURE_STATUS_MAP = {
    "COMPLETED": NormalizedStatus.PAID,
    "PENDING": NormalizedStatus.PENDING,
    "DECLINED": NormalizedStatus.FAILED,
    "FAILED": NormalizedStatus.FAILED,
    "REFUNDED": NormalizedStatus.PAID,
    "PARTIALLY_REFUNDED": NormalizedStatus.PAID,
}

# Events whose resource points at an order we may have to reconcile
ORDER_EVENTS = {"CHECKOUT.ORDER.APPROVED", "CHECKOUT.ORDER.COMPLETED", "CHECKOUT.ORDER.VOIDED"}
CAPTURE_EVENTS = {"PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.PENDING"}


def _first_capture(order: dict) -> dict | None:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return None


def normalize_order(order: dict) -> GatewayStatus:
    """Collapse a PayPal order payload into a GatewayStatus."""
    order_id = order.get("id", "")
    order_status = (order.get("status") or "").upper()
    capture = _first_capture(order)

    if order_status == "COMPLETED" and capture:
        capture_status = (capture.get("status") or "").upper()
        return GatewayStatus(
            order_id=order_id,
            status=CAPTURE_STATUS_MAP.get(capture_status, NormalizedStatus.FAILED),
            amount=to_minor_units((capture.get("amount") or {}).get("value")),
            capture_id=capture.get("id"),
            gateway_status=f"COMPLETED/{capture_status}",
            raw=order,
        )

    amount = None
    units = order.get("purchase_units") or []
    if units:
        amount = to_minor_units((units[0].get("amount") or {}).get("value"))

    return GatewayStatus(
        order_id=order_id,
        status=ORDER_STATUS_MAP.get(order_status, NormalizedStatus.FAILED),
        amount=amount,
        requires_capture=order_status == "APPROVED",
        gateway_status=order_status,
        raw=order,
    )


class PayPalGateway(HttpGatewayClient, PaymentGateway):
    """PayPal Orders v2 API."""

    gateway_name = "paypal"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        webhook_id: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(client=client)
        self.client_id = client_id or settings.paypal_client_id
        self.client_secret = client_secret or settings.paypal_client_secret
        self.base_url = (base_url or settings.paypal_base_url).rstrip("/")
        self.webhook_id = webhook_id or settings.paypal_webhook_id
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.PAYPAL

    @property
    def is_live(self) -> bool:
        return "sandbox" not in self.base_url

    async def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        if not self.client_id or not self.client_secret:
            raise GatewayRejected(self.gateway_name, "PayPal is not configured")

        data = await self._request(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        self._access_token = data["access_token"]
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + int(data.get("expires_in", 300)) - 60
        return self._access_token

    async def _headers(self, request_id: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self._get_access_token()}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    async def create_session(
        self,
        booking_id: UUID,
        amount: int,
        currency: str,
        customer: CustomerDetails,
    ) -> CheckoutSession:
        api_base = f"{settings.public_api_url}{settings.api_prefix}"
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": str(booking_id),
                    "description": "Consultation booking",
                    "amount": {"currency_code": currency, "value": to_major_units(amount)},
                }
            ],
            "application_context": {
                "brand_name": settings.app_name,
                "user_action": "PAY_NOW",
                "return_url": f"{api_base}/payments/return/paypal",
                "cancel_url": f"{api_base}/payments/return/paypal/cancel",
            },
        }
        data = await self._request(
            "POST",
            f"{self.base_url}/v2/checkout/orders",
            json=body,
            headers=await self._headers(request_id=f"order-{booking_id}-{int(time.time())}"),
        )
        approve_url = next(
            (link["href"] for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not data.get("id") or not approve_url:
            raise GatewayRejected(self.gateway_name, "no approval link returned")

        logger.info(f"PayPal order created: order_id={data['id']} booking_id={booking_id}")
        return CheckoutSession(order_id=data["id"], pay_url=approve_url, raw=data)

    async def verify_status(self, order_id: str) -> GatewayStatus:
        data = await self._request(
            "GET",
            f"{self.base_url}/v2/checkout/orders/{order_id}",
            headers=await self._headers(),
        )
        return normalize_order(data)

    async def capture(self, order_id: str) -> GatewayStatus:
        try:
            data = await self._request(
                "POST",
                f"{self.base_url}/v2/checkout/orders/{order_id}/capture",
                headers=await self._headers(request_id=f"capture-{order_id}"),
            )
        except GatewayRejected as e:
            # Already captured by a concurrent channel, or the instrument was declined
            logger.info(f"PayPal capture rejected for {order_id}: {e.reason}")
            current = await self.verify_status(order_id)
            if current.requires_capture:
                current.status = NormalizedStatus.FAILED
                current.requires_capture = False
            return current

        logger.info(f"PayPal order captured: order_id={order_id}")
        return normalize_order(data)

    async def refund(
        self,
        order_id: str,
        capture_id: str | None,
        amount: int,
        reason: str,
    ) -> RefundResult:
        if not capture_id:
            capture_id = (await self.verify_status(order_id)).capture_id
        if not capture_id:
            raise GatewayRejected(self.gateway_name, f"order {order_id} has no capture to refund")

        currency = settings.currency
        data = await self._request(
            "POST",
            f"{self.base_url}/v2/payments/captures/{capture_id}/refund",
            json={
                "amount": {"currency_code": currency, "value": to_major_units(amount)},
                "note_to_payer": reason[:255],
            },
            headers=await self._headers(request_id=f"refund-{capture_id}"),
        )
        return RefundResult(refund_id=data.get("id", ""), status=data.get("status", "PENDING"), raw=data)

    async def parse_webhook(
        self,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> WebhookEvent | None:
        if not self.webhook_id:
            raise ValidationError("PayPal webhook id is not configured")

        try:
            event = json.loads(payload)
        except ValueError:
            raise ValidationError("Invalid PayPal webhook payload")

        headers = lower_headers(headers)
        verification = await self._request(
            "POST",
            f"{self.base_url}/v1/notifications/verify-webhook-signature",
            json={
                "auth_algo": headers.get("paypal-auth-algo"),
                "cert_url": headers.get("paypal-cert-url"),
                "transmission_id": headers.get("paypal-transmission-id"),
                "transmission_sig": headers.get("paypal-transmission-sig"),
                "transmission_time": headers.get("paypal-transmission-time"),
                "webhook_id": self.webhook_id,
                "webhook_event": event,
            },
            headers=await self._headers(),
        )
        if verification.get("verification_status") != "SUCCESS":
            raise ValidationError("Invalid PayPal webhook signature")

        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}
        if event_type in ORDER_EVENTS:
            order_id = resource.get("id")
        elif event_type in CAPTURE_EVENTS:
            order_id = (
                (resource.get("supplementary_data") or {}).get("related_ids", {}).get("order_id")
            )
        else:
            order_id = None

        if not order_id:
            logger.info(f"PayPal webhook ignored: type={event_type}")
            return None
        return WebhookEvent(gateway=self.gateway_name, reference=order_id, event_type=event_type, raw=event)
