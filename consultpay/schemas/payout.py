"""Payout schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class PayoutRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in paise")
    notes: str | None = Field(None, max_length=1000)


class PayoutApprove(BaseModel):
    transaction_fee: int = Field(0, ge=0, description="Fee in paise")


class PayoutReject(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_id: UUID
    bank_account_id: UUID
    requested_amount: int
    transaction_fee: int
    actual_amount: int | None
    currency: str
    status: str
    transfer_id: str | None
    gateway_transfer_reference: str | None
    rejection_reason: str | None
    requested_at: datetime
    approved_at: datetime | None
    rejected_at: datetime | None
    processed_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None


class PayoutListResponse(BaseModel):
    payouts: list[PayoutResponse]
    total: int
    total_amount: int
