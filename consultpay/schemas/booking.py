"""Booking and session schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class BookingCreate(BaseModel):
    """Schema for booking a session."""

    provider_id: UUID
    start_time: datetime
    end_time: datetime
    amount: int = Field(..., gt=0, description="Price in paise")
    notes: str | None = Field(None, max_length=2000)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    seeker_id: UUID
    provider_id: UUID
    start_time: datetime
    end_time: datetime
    amount: int
    currency: str
    status: str
    meeting_url: str | None
    created_at: datetime
    confirmed_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancelled_by: UUID | None = None
    cancellation_reason: str | None = None


class CompletionCodeResponse(BaseModel):
    code: str
    expires_at: datetime


class SessionCompleteRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class BookingCancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class BookingCancellationResponse(BaseModel):
    booking: BookingResponse
    refund_amount: int = Field(..., description="Refund in paise, 0 when none is due")
    refund_status: str
