"""Provider earnings endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends

from consultpay.api.deps import CurrentProvider, DbSession, get_earnings_service
from consultpay.schemas.earnings import BalanceResponse, EarningsResponse
from consultpay.services.earnings_service import EarningsService

router = APIRouter()


@router.get("", response_model=BalanceResponse)
async def get_balance(
    provider: CurrentProvider,
    db: DbSession,
    earnings: Annotated[EarningsService, Depends(get_earnings_service)],
) -> BalanceResponse:
    balance = await earnings.get_provider_balance(db, provider.id)
    recent = await earnings.list_provider_earnings(db, provider.id)
    return BalanceResponse(
        pending=balance.pending,
        disputed=balance.disputed,
        approved=balance.approved,
        paid_out=balance.paid_out,
        reversed=balance.reversed,
        allocated=balance.allocated,
        available=balance.available,
        earnings=[EarningsResponse.model_validate(e) for e in recent],
    )
