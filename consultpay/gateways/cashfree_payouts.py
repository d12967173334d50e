"""Cashfree Payouts adapter: bank transfers for penny tests and payouts."""

import base64
import hashlib
import hmac
import logging
from collections.abc import Mapping
from urllib.parse import parse_qsl

import httpx

from consultpay.config import settings
from consultpay.core.exceptions import GatewayRejected, GatewayUnavailable, ValidationError
from consultpay.gateways.base import (
    Beneficiary,
    HttpGatewayClient,
    TransferGateway,
    TransferResult,
    TransferStatus,
    WebhookEvent,
    to_major_units,
)

logger = logging.getLogger(__name__)

TRANSFER_STATUS_MAP = {
    "SUCCESS": TransferStatus.COMPLETED,
    "FAILED": TransferStatus.FAILED,
    "REJECTED": TransferStatus.FAILED,
    "REVERSED": TransferStatus.FAILED,
}

# subCode returned when a transferId was already submitted
DUPLICATE_TRANSFER_SUBCODE = "409"
NOT_FOUND_SUBCODE = "404"


def normalize_transfer_status(status: str | None) -> TransferStatus:
    """Anything not final is still processing."""
    return TRANSFER_STATUS_MAP.get((status or "").upper(), TransferStatus.PROCESSING)


def compute_form_signature(secret: str, fields: dict[str, str]) -> str:
    """base64(HMAC-SHA256) over the values of the sorted form fields."""
    message = "".join(fields[key] for key in sorted(fields))
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class CashfreePayoutsGateway(HttpGatewayClient, TransferGateway):
    """Cashfree Payouts v1 API."""

    gateway_name = "cashfree_payouts"
    name = "cashfree_payouts"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(client=client)
        self.client_id = client_id or settings.cashfree_payout_client_id
        self.client_secret = client_secret or settings.cashfree_payout_client_secret
        self.base_url = (base_url or settings.cashfree_payout_base_url).rstrip("/")
        self.webhook_secret = settings.cashfree_payout_webhook_secret or self.client_secret

    @property
    def is_live(self) -> bool:
        return "gamma" not in self.base_url and "sandbox" not in self.base_url

    def _headers(self) -> dict[str, str]:
        if not self.client_id or not self.client_secret:
            raise GatewayRejected(self.gateway_name, "Cashfree Payouts is not configured")
        return {
            "X-Client-Id": self.client_id,
            "X-Client-Secret": self.client_secret,
            "Content-Type": "application/json",
        }

    def _raise_for_error(self, body: dict) -> None:
        """Cashfree v1 reports errors in a 200 body with status ERROR."""
        if body.get("status") != "ERROR":
            return
        sub_code = str(body.get("subCode", ""))
        message = body.get("message") or "transfer request failed"
        if sub_code.startswith("5"):
            raise GatewayUnavailable(self.gateway_name, message)
        raise GatewayRejected(self.gateway_name, message)

    async def transfer(
        self,
        transfer_id: str,
        amount: int,
        beneficiary: Beneficiary,
        remarks: str,
    ) -> TransferResult:
        body = {
            "transferId": transfer_id,
            "transferMode": "banktransfer",
            "amount": to_major_units(amount),
            "remarks": remarks[:70],
            "beneDetails": {
                "beneId": beneficiary.beneficiary_id,
                "name": beneficiary.name,
                "email": beneficiary.email,
                "phone": beneficiary.phone or "9999999999",
                "bankAccount": beneficiary.account_number,
                "ifsc": beneficiary.ifsc,
                "address1": "Registered address",
            },
        }
        data = await self._request(
            "POST",
            f"{self.base_url}/payout/v1/requestTransfer",
            json=body,
            headers=self._headers(),
        )

        if data.get("status") == "ERROR" and str(data.get("subCode")) == DUPLICATE_TRANSFER_SUBCODE:
            logger.info(f"Transfer {transfer_id} already submitted, fetching status")
            existing = await self.transfer_status(transfer_id)
            if existing is not None:
                return existing
        self._raise_for_error(data)

        details = data.get("data") or {}
        # SUCCESS here means accepted; PENDING means queued at the bank
        status = TransferStatus.PROCESSING
        if data.get("status") == "SUCCESS" and str(data.get("subCode")) == "200" and details.get("utr"):
            status = TransferStatus.COMPLETED

        logger.info(f"Transfer submitted: transfer_id={transfer_id} status={data.get('status')}")
        return TransferResult(
            transfer_id=transfer_id,
            status=status,
            reference=details.get("referenceId"),
            gateway_status=data.get("status"),
            raw=data,
        )

    async def transfer_status(self, transfer_id: str) -> TransferResult | None:
        data = await self._request(
            "GET",
            f"{self.base_url}/payout/v1/getTransferStatus",
            params={"transferId": transfer_id},
            headers=self._headers(),
        )
        if data.get("status") == "ERROR" and str(data.get("subCode")) == NOT_FOUND_SUBCODE:
            return None
        self._raise_for_error(data)

        transfer = (data.get("data") or {}).get("transfer") or {}
        gateway_status = transfer.get("status")
        return TransferResult(
            transfer_id=transfer_id,
            status=normalize_transfer_status(gateway_status),
            reference=transfer.get("referenceId"),
            gateway_status=gateway_status,
            reason=transfer.get("reason"),
            raw=data,
        )

    async def parse_webhook(
        self,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> WebhookEvent | None:
        if not self.webhook_secret:
            raise ValidationError("Cashfree Payouts webhook secret is not configured")

        fields = dict(parse_qsl(payload.decode("utf-8"), keep_blank_values=True))
        signature = fields.pop("signature", None)
        if not signature:
            raise ValidationError("Missing Cashfree Payouts webhook signature")

        expected = compute_form_signature(self.webhook_secret, fields)
        if not hmac.compare_digest(expected, signature):
            raise ValidationError("Invalid Cashfree Payouts webhook signature")

        transfer_id = fields.get("transferId")
        if not transfer_id:
            return None
        return WebhookEvent(
            gateway=self.gateway_name,
            reference=transfer_id,
            event_type=fields.get("event", "unknown"),
            raw=fields,
        )
