"""Booking and session completion endpoints."""

from datetime import timedelta
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status

from consultpay.api.deps import CurrentUser, DbSession, get_cancellation_service, get_earnings_service
from consultpay.config import settings
from consultpay.database import utcnow
from consultpay.schemas.booking import (
    BookingCancellationResponse,
    BookingCancelRequest,
    BookingCreate,
    BookingResponse,
    CompletionCodeResponse,
    SessionCompleteRequest,
)
from consultpay.schemas.earnings import EarningsResponse
from consultpay.services.booking_service import booking_service
from consultpay.services.cancellation_service import CancellationService
from consultpay.services.earnings_service import EarningsService

router = APIRouter()

Earnings = Annotated[EarningsService, Depends(get_earnings_service)]
Cancellations = Annotated[CancellationService, Depends(get_cancellation_service)]


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(data: BookingCreate, current_user: CurrentUser, db: DbSession) -> BookingResponse:
    booking = await booking_service.create_booking(
        db,
        seeker=current_user,
        provider_id=data.provider_id,
        start_time=data.start_time,
        end_time=data.end_time,
        amount=data.amount,
        notes=data.notes,
    )
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: UUID, current_user: CurrentUser, db: DbSession) -> BookingResponse:
    booking = await booking_service.get_for_participant(db, booking_id, current_user)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/completion-code", response_model=CompletionCodeResponse)
async def issue_completion_code(
    booking_id: UUID, current_user: CurrentUser, db: DbSession, earnings: Earnings
) -> CompletionCodeResponse:
    """Seeker requests the code to hand to the provider when the session ends."""
    code = await earnings.issue_completion_code(db, booking_id, current_user)
    return CompletionCodeResponse(
        code=code,
        expires_at=utcnow() + timedelta(minutes=settings.completion_code_ttl_minutes),
    )


@router.post("/{booking_id}/complete", response_model=EarningsResponse)
async def complete_session(
    booking_id: UUID,
    data: SessionCompleteRequest,
    current_user: CurrentUser,
    db: DbSession,
    earnings: Earnings,
) -> EarningsResponse:
    """Provider submits the seeker's completion code."""
    record = await earnings.complete_session(db, booking_id, code=data.code, actor=current_user)
    return EarningsResponse.model_validate(record)


@router.post("/{booking_id}/cancel", response_model=BookingCancellationResponse)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    current_user: CurrentUser,
    db: DbSession,
    cancellations: Cancellations,
) -> BookingCancellationResponse:
    """Either participant cancels; a paid booking is refunded by notice period."""
    result = await cancellations.cancel_booking(db, booking_id, current_user, reason=data.reason)
    return BookingCancellationResponse(
        booking=BookingResponse.model_validate(result.booking),
        refund_amount=result.refund_amount,
        refund_status=result.refund_status,
    )
