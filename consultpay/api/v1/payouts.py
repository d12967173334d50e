"""Provider payout endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from consultpay.api.deps import CurrentProvider, DbSession, get_payout_service
from consultpay.schemas.payout import PayoutListResponse, PayoutRequest, PayoutResponse
from consultpay.services.payout_allocator import payout_allocator
from consultpay.services.payout_service import PayoutService

router = APIRouter()


@router.post("/request", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED)
async def request_payout(data: PayoutRequest, provider: CurrentProvider, db: DbSession) -> PayoutResponse:
    payout = await payout_allocator.request_payout(db, provider, data.amount, data.notes)
    return PayoutResponse.model_validate(payout)


@router.get("", response_model=PayoutListResponse)
async def list_payouts(
    provider: CurrentProvider,
    db: DbSession,
    payouts: Annotated[PayoutService, Depends(get_payout_service)],
) -> PayoutListResponse:
    records = await payouts.get_provider_payouts(db, provider.id)
    return PayoutListResponse(
        payouts=[PayoutResponse.model_validate(p) for p in records],
        total=len(records),
        total_amount=sum(p.actual_amount or 0 for p in records if p.status == "completed"),
    )
