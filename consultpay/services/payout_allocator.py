"""Payout allocator.

Turns a provider's withdrawal request into a Payout funded by their approved
earnings, oldest first, splitting the last earning when it is only partly
needed. The provider row is locked for the whole allocation so two requests
can never spend the same balance.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.config import settings
from consultpay.core.exceptions import InsufficientBalance, PreconditionFailed, ValidationError
from consultpay.database import utcnow
from consultpay.domain.bank_account_state import can_receive_funds
from consultpay.domain.payout_state import IN_FLIGHT_STATUSES
from consultpay.gateways.base import to_major_units
from consultpay.models.bank_account import ProviderBankAccount
from consultpay.models.earnings import ProviderEarnings
from consultpay.models.payout import Payout, PayoutEarning, PayoutLog
from consultpay.models.user import Provider
from consultpay.services.ledger_store import get_for_update, is_unique_violation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allocation:
    earning_id: UUID
    amount: int
    consumes_earning: bool


def allocate(earnings: list[tuple[UUID, int]], amount: int) -> list[Allocation]:
    """Greedy FIFO allocation.

    Args:
        earnings: (earning id, available amount) pairs, oldest first
        amount: Amount to fund

    Raises:
        InsufficientBalance: The earnings do not cover the amount
    """
    total = sum(available for _, available in earnings if available > 0)
    if total < amount:
        raise InsufficientBalance(f"Insufficient balance. Available: ₹{to_major_units(total)}")

    allocations: list[Allocation] = []
    remaining = amount
    for earning_id, available in earnings:
        if remaining == 0:
            break
        if available <= 0:
            continue
        take = min(available, remaining)
        allocations.append(Allocation(earning_id, take, take == available))
        remaining -= take
    return allocations


class PayoutAllocator:
    """Creates payout requests from approved earnings."""

    async def available_earnings(self, db: AsyncSession, provider_id: UUID) -> list[tuple[UUID, int]]:
        """Approved earnings with what is left of each, oldest first."""
        allocated = (
            select(PayoutEarning.earning_id, func.sum(PayoutEarning.amount).label("allocated"))
            .where(PayoutEarning.released.is_(False))
            .group_by(PayoutEarning.earning_id)
            .subquery()
        )
        result = await db.execute(
            select(
                ProviderEarnings.id,
                ProviderEarnings.net_amount - func.coalesce(allocated.c.allocated, 0),
            )
            .outerjoin(allocated, allocated.c.earning_id == ProviderEarnings.id)
            .where(ProviderEarnings.provider_id == provider_id, ProviderEarnings.status == "approved")
            .order_by(ProviderEarnings.created_at, ProviderEarnings.id)
        )
        return [(earning_id, int(available)) for earning_id, available in result.all()]

    async def request_payout(
        self,
        db: AsyncSession,
        provider: Provider,
        amount: int,
        notes: str | None = None,
    ) -> Payout:
        """Create a payout request for ``amount`` paise.

        Raises:
            ValidationError: Amount outside the allowed range
            PreconditionFailed: No verified account, or a payout already in flight
            InsufficientBalance: Approved earnings do not cover the amount
        """
        if amount < settings.payout_minimum_amount:
            raise ValidationError(f"Minimum payout is ₹{to_major_units(settings.payout_minimum_amount)}")
        if amount > settings.payout_maximum_amount:
            raise ValidationError(f"Maximum payout is ₹{to_major_units(settings.payout_maximum_amount)}")

        provider_id = provider.id
        await get_for_update(db, Provider, provider_id)

        result = await db.execute(
            select(ProviderBankAccount).where(
                ProviderBankAccount.provider_id == provider_id, ProviderBankAccount.status != "deleted"
            )
        )
        account = result.scalar_one_or_none()
        if account is None or not can_receive_funds(account.status, account.is_active):
            await db.rollback()
            raise PreconditionFailed("A verified bank account is required to request a payout")

        in_flight = await db.execute(
            select(Payout.id).where(Payout.provider_id == provider_id, Payout.status.in_(IN_FLIGHT_STATUSES))
        )
        if in_flight.first() is not None:
            await db.rollback()
            raise PreconditionFailed("You already have a payout in progress")

        try:
            allocations = allocate(await self.available_earnings(db, provider_id), amount)
        except InsufficientBalance:
            await db.rollback()
            raise

        payout = Payout(
            provider_id=provider_id,
            bank_account_id=account.id,
            requested_amount=amount,
            currency=settings.currency,
            status="requested",
            notes=notes,
            requested_at=utcnow(),
        )
        try:
            db.add(payout)
            await db.flush()
            for position, allocation in enumerate(allocations):
                db.add(
                    PayoutEarning(
                        payout_id=payout.id,
                        earning_id=allocation.earning_id,
                        amount=allocation.amount,
                        position=position,
                    )
                )
            consumed = [a.earning_id for a in allocations if a.consumes_earning]
            if consumed:
                await db.execute(
                    update(ProviderEarnings)
                    .where(ProviderEarnings.id.in_(consumed), ProviderEarnings.status == "approved")
                    .values(status="paid_out")
                )
            db.add(
                PayoutLog(
                    payout_id=payout.id,
                    action="requested",
                    details={
                        "amount": amount,
                        "bank_account_id": str(account.id),
                        "lines": [
                            {"earning_id": str(a.earning_id), "amount": a.amount} for a in allocations
                        ],
                    },
                    performed_by=str(provider.user_id),
                )
            )
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            if is_unique_violation(e):
                raise PreconditionFailed("You already have a payout in progress")
            raise

        logger.info(
            f"Payout requested: id={payout.id} provider={provider_id} amount={amount} "
            f"lines={len(allocations)}"
        )
        return payout


payout_allocator = PayoutAllocator()
