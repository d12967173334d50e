"""Dispute endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status

from consultpay.api.deps import CurrentStaff, CurrentUser, DbSession, get_dispute_service
from consultpay.schemas.dispute import DisputeCreate, DisputeResolve, DisputeResponse
from consultpay.services.dispute_service import DisputeService

router = APIRouter()

Disputes = Annotated[DisputeService, Depends(get_dispute_service)]


@router.post("", response_model=DisputeResponse, status_code=status.HTTP_201_CREATED)
async def open_dispute(
    data: DisputeCreate, current_user: CurrentUser, db: DbSession, disputes: Disputes
) -> DisputeResponse:
    dispute = await disputes.open_dispute(db, data.booking_id, current_user, data.reason, data.description)
    return DisputeResponse.model_validate(dispute)


@router.get("", response_model=list[DisputeResponse])
async def list_open_disputes(staff: CurrentStaff, db: DbSession, disputes: Disputes) -> list[DisputeResponse]:
    return [DisputeResponse.model_validate(d) for d in await disputes.list_open_disputes(db)]


@router.post("/{dispute_id}/review", response_model=DisputeResponse)
async def start_review(dispute_id: UUID, staff: CurrentStaff, db: DbSession, disputes: Disputes) -> DisputeResponse:
    return DisputeResponse.model_validate(await disputes.start_review(db, dispute_id, staff))


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: UUID, data: DisputeResolve, staff: CurrentStaff, db: DbSession, disputes: Disputes
) -> DisputeResponse:
    dispute = await disputes.resolve_dispute(db, dispute_id, staff, data.resolution, data.note)
    return DisputeResponse.model_validate(dispute)


@router.post("/{dispute_id}/retry-refund", status_code=status.HTTP_200_OK)
async def retry_refund(dispute_id: UUID, staff: CurrentStaff, db: DbSession, disputes: Disputes) -> dict:
    transaction = await disputes.retry_refund(db, dispute_id)
    return {"transaction_id": str(transaction.id), "status": transaction.status}
