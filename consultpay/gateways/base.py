"""Base payment gateway interfaces.

All gateway adapters must implement these interfaces.
Business logic should NOT live in adapters - only gateway communication,
status normalisation and error classification.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import UUID

import httpx

from consultpay.config import settings
from consultpay.core.exceptions import GatewayRejected, GatewayUnavailable

logger = logging.getLogger(__name__)


class GatewayType(str, Enum):
    """Supported payment gateways."""

    CASHFREE = "cashfree"
    PAYPAL = "paypal"
    STRIPE = "stripe"


class NormalizedStatus(str, Enum):
    """Gateway payment status collapsed to what the ledger cares about."""

    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransferStatus(str, Enum):
    """Outgoing bank transfer status."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CustomerDetails:
    customer_id: str
    name: str
    email: str
    phone: str | None = None


@dataclass
class CheckoutSession:
    """Result of creating a payment session."""

    order_id: str
    pay_url: str | None = None
    client_secret: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class GatewayStatus:
    """Authoritative payment status as reported by the gateway."""

    order_id: str
    status: NormalizedStatus
    amount: int | None = None  # in paise
    capture_id: str | None = None
    requires_capture: bool = False
    gateway_status: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class RefundResult:
    refund_id: str
    status: str
    raw: dict = field(default_factory=dict)


@dataclass
class WebhookEvent:
    """Verified webhook reduced to the identifier worth reconciling."""

    gateway: str
    reference: str  # order id for payments, transfer id for payouts
    event_type: str
    raw: dict = field(default_factory=dict)


@dataclass
class Beneficiary:
    """Bank details for an outgoing transfer."""

    beneficiary_id: str
    name: str
    account_number: str
    ifsc: str
    email: str
    phone: str | None = None


@dataclass
class TransferResult:
    transfer_id: str
    status: TransferStatus
    reference: str | None = None
    gateway_status: str | None = None
    reason: str | None = None
    raw: dict = field(default_factory=dict)


def to_major_units(amount: int) -> str:
    """Paise to a two-decimal rupee string."""
    return str((Decimal(amount) / Decimal("100")).quantize(Decimal("0.01")))


def to_minor_units(value: str | float | int | Decimal | None) -> int | None:
    """Rupee amount from a gateway payload to paise."""
    if value is None:
        return None
    minor = (Decimal(str(value)) * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


def lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        """Return the gateway type."""

    @property
    def is_live(self) -> bool:
        """True when the adapter talks to a production endpoint."""
        return False

    @abstractmethod
    async def create_session(
        self,
        booking_id: UUID,
        amount: int,
        currency: str,
        customer: CustomerDetails,
    ) -> CheckoutSession:
        """Create a payment order/intent for a booking.

        Args:
            booking_id: Booking being paid for
            amount: Amount in paise
            currency: Currency code (INR)
            customer: Payer details

        Raises:
            GatewayUnavailable: Transient failure, retry later
            GatewayRejected: Gateway refused the order
        """

    @abstractmethod
    async def verify_status(self, order_id: str) -> GatewayStatus:
        """Fetch the authoritative status of an order."""

    async def capture(self, order_id: str) -> GatewayStatus:
        """Capture an approved order. Gateways that auto-capture just re-verify."""
        return await self.verify_status(order_id)

    @abstractmethod
    async def refund(
        self,
        order_id: str,
        capture_id: str | None,
        amount: int,
        reason: str,
    ) -> RefundResult:
        """Refund a paid order. Must be idempotent per order."""

    @abstractmethod
    async def parse_webhook(
        self,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> WebhookEvent | None:
        """Verify a webhook and extract the order id.

        Raises:
            ValidationError: If the signature is invalid

        Returns:
            WebhookEvent, or None if the event carries nothing to reconcile
        """


class TransferGateway(ABC):
    """Outgoing bank transfers (penny tests and payouts)."""

    name: str = "transfers"

    @property
    def is_live(self) -> bool:
        return False

    @abstractmethod
    async def transfer(
        self,
        transfer_id: str,
        amount: int,
        beneficiary: Beneficiary,
        remarks: str,
    ) -> TransferResult:
        """Send money. Re-sending a known transfer id must not pay twice."""

    @abstractmethod
    async def transfer_status(self, transfer_id: str) -> TransferResult | None:
        """Final or interim status of a transfer, None if the gateway never saw it."""

    @abstractmethod
    async def parse_webhook(
        self,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> WebhookEvent | None:
        """Verify a transfer notification and extract the transfer id."""


class HttpGatewayClient:
    """httpx plumbing shared by REST gateway adapters.

    Maps transport failures, timeouts, 429 and 5xx to GatewayUnavailable and
    other 4xx to GatewayRejected.
    """

    gateway_name = "gateway"

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float | None = None) -> None:
        self._client = client
        self._timeout = timeout or settings.gateway_timeout_seconds

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazily create the shared client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http_client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"{self.gateway_name} timeout on {method} {url}: {e}")
            raise GatewayUnavailable(self.gateway_name, "request timed out")
        except httpx.TransportError as e:
            logger.warning(f"{self.gateway_name} transport error on {method} {url}: {e}")
            raise GatewayUnavailable(self.gateway_name, str(e) or "connection failed")

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(
                f"{self.gateway_name} returned {response.status_code} on {method} {url}"
            )
            raise GatewayUnavailable(
                self.gateway_name, f"HTTP {response.status_code}"
            )
        return response

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        """Send a request and return the JSON body of a 2xx response."""
        response = await self._send(method, url, **kwargs)
        if response.status_code >= 400:
            raise GatewayRejected(self.gateway_name, self._error_message(response))
        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        if isinstance(body, dict):
            return str(
                body.get("message")
                or body.get("error_description")
                or body.get("error")
                or f"HTTP {response.status_code}"
            )
        return f"HTTP {response.status_code}"
