"""Commission calculation service.

Commission is a fraction of the booking amount: the provider's override when
set, otherwise the platform default. The rate used is snapshotted onto the
earnings row so later configuration changes never rewrite history.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.config import settings
from consultpay.core.exceptions import NotFoundError, ValidationError
from consultpay.models.user import Provider, User
from consultpay.services.audit_service import audit_service
from consultpay.services.ledger_store import get_for_update

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EarningsSplit:
    gross_amount: int
    commission_rate: Decimal
    commission_amount: int
    net_amount: int


class CommissionService:
    """Service for commission rates and the gross/commission/net split."""

    def __init__(self, default_rate: Decimal | None = None):
        self.default_rate = default_rate if default_rate is not None else settings.platform_commission_rate

    def resolve_rate(self, provider_rate: Decimal | None) -> Decimal:
        """Provider override wins over the platform default."""
        rate = provider_rate if provider_rate is not None else self.default_rate
        self.validate_rate(rate)
        return Decimal(rate)

    @staticmethod
    def validate_rate(rate: Decimal) -> None:
        if rate < 0 or rate > 1:
            raise ValidationError(f"Commission rate must be between 0 and 1, got {rate}")

    def split(self, gross_amount: int, rate: Decimal) -> EarningsSplit:
        """Split a gross amount in paise.

        Commission is rounded half-up to the paisa and net is derived by
        subtraction, so commission + net == gross holds exactly.
        """
        if gross_amount <= 0:
            raise ValidationError(f"Gross amount must be positive, got {gross_amount}")
        self.validate_rate(rate)

        commission = int((Decimal(gross_amount) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return EarningsSplit(
            gross_amount=gross_amount,
            commission_rate=rate,
            commission_amount=commission,
            net_amount=gross_amount - commission,
        )

    async def set_provider_rate(
        self, db: AsyncSession, provider_id: UUID, rate: Decimal | None, staff: User
    ) -> Provider:
        """Set or clear a provider's commission override.

        Only earnings created afterwards use the new rate.
        """
        if rate is not None:
            self.validate_rate(rate)
        provider = await get_for_update(db, Provider, provider_id)
        if provider is None:
            raise NotFoundError("Provider", str(provider_id))

        old_rate = provider.commission_rate
        provider.commission_rate = rate
        await audit_service.log_action(
            db,
            action="commission_rate_updated",
            resource_type="provider",
            resource_id=provider_id,
            old_values={"commission_rate": str(old_rate) if old_rate is not None else None},
            new_values={"commission_rate": str(rate) if rate is not None else None},
            user_id=staff.id,
        )
        await db.commit()
        logger.info(f"Commission for provider {provider_id} set to {rate} by staff {staff.id}")
        return provider


commission_service = CommissionService()
