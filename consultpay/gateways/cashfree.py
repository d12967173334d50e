"""Cashfree payment gateway adapter (cards, wallets, UPI)."""

import base64
import hashlib
import hmac
import json
import logging
import secrets
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
    "PAID": NormalizedStatus.PAID,
    "ACTIVE": NormalizedStatus.PENDING,
    "PARTIALLY_PAID": NormalizedStatus.PENDING,
    "EXPIRED": NormalizedStatus.CANCELLED,
    "TERMINATED": NormalizedStatus.CANCELLED,
    "TERMINATION_REQUESTED": NormalizedStatus.CANCELLED,
    "CANCELLED": NormalizedStatus.CANCELLED,
}


def normalize_order_status(order_status: str | None) -> NormalizedStatus:
    """Map a Cashfree order_status; unknown values count as failed."""
    if not order_status:
        return NormalizedStatus.PENDING
    return ORDER_STATUS_MAP.get(order_status.upper(), NormalizedStatus.FAILED)


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    """base64(HMAC-SHA256(secret, timestamp + body))."""
    message = timestamp.encode("utf-8") + raw_body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class CashfreeGateway(HttpGatewayClient, PaymentGateway):
    """Cashfree PG orders API."""

    gateway_name = "cashfree"

    def __init__(
        self,
        app_id: str | None = None,
        secret_key: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(client=client)
        self.app_id = app_id or settings.cashfree_app_id
        self.secret_key = secret_key or settings.cashfree_secret_key
        self.base_url = (base_url or settings.cashfree_base_url).rstrip("/")

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.CASHFREE

    @property
    def is_live(self) -> bool:
        return "sandbox" not in self.base_url

    def _headers(self) -> dict[str, str]:
        if not self.app_id or not self.secret_key:
            raise GatewayRejected(self.gateway_name, "Cashfree is not configured")
        return {
            "x-api-version": settings.cashfree_api_version,
            "x-client-id": self.app_id,
            "x-client-secret": self.secret_key,
            "Content-Type": "application/json",
        }

    @staticmethod
    def generate_order_id(booking_id: UUID) -> str:
        suffix = secrets.token_hex(3)
        return f"ORDER_{booking_id.hex[:12]}_{int(time.time())}_{suffix}".upper()

    async def create_session(
        self,
        booking_id: UUID,
        amount: int,
        currency: str,
        customer: CustomerDetails,
    ) -> CheckoutSession:
        order_id = self.generate_order_id(booking_id)
        api_base = f"{settings.public_api_url}{settings.api_prefix}"
        body = {
            "order_id": order_id,
            "order_amount": float(to_major_units(amount)),
            "order_currency": currency,
            "customer_details": {
                "customer_id": customer.customer_id,
                "customer_name": customer.name,
                "customer_email": customer.email,
                "customer_phone": customer.phone or "9999999999",
            },
            "order_meta": {
                "return_url": f"{api_base}/payments/return/cashfree?order_id={order_id}",
                "notify_url": f"{api_base}/webhooks/cashfree",
            },
            "order_note": f"Consultation booking {booking_id}",
        }
        data = await self._request("POST", f"{self.base_url}/orders", json=body, headers=self._headers())

        session_id = data.get("payment_session_id")
        if not session_id:
            raise GatewayRejected(self.gateway_name, "no payment session returned")

        logger.info(f"Cashfree order created: order_id={order_id} booking_id={booking_id}")
        return CheckoutSession(
            order_id=data.get("order_id", order_id),
            pay_url=f"{settings.cashfree_checkout_url}?session-id={session_id}",
            raw=data,
        )

    async def verify_status(self, order_id: str) -> GatewayStatus:
        data = await self._request(
            "GET", f"{self.base_url}/orders/{order_id}", headers=self._headers()
        )
        order_status = data.get("order_status")
        status = normalize_order_status(order_status)

        capture_id = None
        if status == NormalizedStatus.PAID:
            capture_id = await self._successful_payment_id(order_id)

        return GatewayStatus(
            order_id=order_id,
            status=status,
            amount=to_minor_units(data.get("order_amount")),
            capture_id=capture_id,
            gateway_status=order_status,
            raw=data,
        )

    async def _successful_payment_id(self, order_id: str) -> str | None:
        payments = await self._request(
            "GET", f"{self.base_url}/orders/{order_id}/payments", headers=self._headers()
        )
        if not isinstance(payments, list):
            return None
        for payment in payments:
            if payment.get("payment_status") == "SUCCESS":
                return str(payment.get("cf_payment_id"))
        return None

    async def refund(
        self,
        order_id: str,
        capture_id: str | None,
        amount: int,
        reason: str,
    ) -> RefundResult:
        refund_id = f"refund_{order_id}"
        body = {
            "refund_amount": float(to_major_units(amount)),
            "refund_id": refund_id,
            "refund_note": reason[:100],
        }
        data = await self._request(
            "POST",
            f"{self.base_url}/orders/{order_id}/refunds",
            json=body,
            headers=self._headers(),
        )
        logger.info(f"Cashfree refund created: order_id={order_id} refund_id={refund_id}")
        return RefundResult(
            refund_id=str(data.get("cf_refund_id") or refund_id),
            status=str(data.get("refund_status", "PENDING")),
            raw=data,
        )

    async def parse_webhook(
        self,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> WebhookEvent | None:
        if not self.secret_key:
            raise ValidationError("Cashfree webhook secret is not configured")

        headers = lower_headers(headers)
        signature = headers.get("x-webhook-signature")
        timestamp = headers.get("x-webhook-timestamp")
        if not signature or not timestamp:
            raise ValidationError("Missing Cashfree webhook signature headers")

        expected = compute_signature(self.secret_key, timestamp, payload)
        if not hmac.compare_digest(expected, signature):
            raise ValidationError("Invalid Cashfree webhook signature")

        try:
            event = json.loads(payload)
        except ValueError:
            raise ValidationError("Invalid Cashfree webhook payload")

        order_id = (event.get("data") or {}).get("order", {}).get("order_id")
        if not order_id:
            logger.info(f"Cashfree webhook without order id ignored: type={event.get('type')}")
            return None

        return WebhookEvent(
            gateway=self.gateway_name,
            reference=order_id,
            event_type=event.get("type", "unknown"),
            raw=event,
        )
