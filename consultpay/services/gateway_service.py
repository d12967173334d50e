"""Payment gateway service.

Routes payment operations to the appropriate gateway adapter.
No business logic here - only gateway coordination.
"""

from consultpay.config import settings
from consultpay.core.exceptions import ValidationError
from consultpay.gateways.base import GatewayType, PaymentGateway, TransferGateway


def _assert_sandbox_outside_production(is_live: bool, name: str) -> None:
    """Block live gateway endpoints outside production.

    Raises:
        RuntimeError: If a live endpoint is configured in a non-production environment
    """
    if is_live and settings.environment != "production":
        raise RuntimeError(
            f"Cannot use live {name} endpoints in {settings.environment} environment. "
            "Point the gateway at its sandbox or set ENVIRONMENT=production."
        )


class GatewayService:
    """Holds one adapter per gateway plus the transfer adapter."""

    def __init__(
        self,
        gateways: dict[GatewayType, PaymentGateway] | None = None,
        transfer_gateway: TransferGateway | None = None,
    ):
        self._gateways: dict[GatewayType, PaymentGateway] = dict(gateways or {})
        self._transfer_gateway = transfer_gateway

    def get(self, gateway_type: str | GatewayType) -> PaymentGateway:
        """Get or create the adapter for a gateway.

        Raises:
            ValidationError: If the gateway is not supported
        """
        if isinstance(gateway_type, str):
            try:
                gateway_type = GatewayType(gateway_type)
            except ValueError:
                raise ValidationError(f"Unsupported payment gateway: {gateway_type}")

        if gateway_type not in self._gateways:
            self._gateways[gateway_type] = self._build(gateway_type)

        gateway = self._gateways[gateway_type]
        _assert_sandbox_outside_production(gateway.is_live, gateway_type.value)
        return gateway

    @property
    def transfers(self) -> TransferGateway:
        if self._transfer_gateway is None:
            from consultpay.gateways.cashfree_payouts import CashfreePayoutsGateway

            self._transfer_gateway = CashfreePayoutsGateway()
        _assert_sandbox_outside_production(self._transfer_gateway.is_live, "payouts")
        return self._transfer_gateway

    @staticmethod
    def _build(gateway_type: GatewayType) -> PaymentGateway:
        if gateway_type == GatewayType.CASHFREE:
            from consultpay.gateways.cashfree import CashfreeGateway

            return CashfreeGateway()
        if gateway_type == GatewayType.PAYPAL:
            from consultpay.gateways.paypal import PayPalGateway

            return PayPalGateway()
        from consultpay.gateways.stripe_gateway import StripeGateway

        return StripeGateway()


# Singleton instance
gateway_service = GatewayService()
