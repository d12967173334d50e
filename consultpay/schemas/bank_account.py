"""Bank account schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class BankAccountCreate(BaseModel):
    """Schema for registering a payout account. Detailed checks happen in the service."""

    account_holder_name: str = Field(..., max_length=100)
    account_number: str = Field(..., max_length=30)
    ifsc_code: str = Field(..., max_length=11)
    bank_name: str = Field(..., min_length=1, max_length=100)
    branch_name: str | None = Field(None, max_length=100)
    account_type: str = Field("savings", pattern="^(savings|current)$")


class BankAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_holder_name: str
    account_number_masked: str
    ifsc_code: str
    bank_name: str
    branch_name: str | None
    account_type: str
    status: str
    is_active: bool
    verification_attempts: int
    created_at: datetime
    penny_test_sent_at: datetime | None
    verified_at: datetime | None


class PennyTestVerify(BaseModel):
    amount: Decimal = Field(..., gt=0, description="Amount received, in rupees")


class VerificationResponse(BaseModel):
    verified: bool
    attempts_remaining: int
    status: str


class DeleteRequestCreate(BaseModel):
    reason: str | None = Field(None, max_length=500)


class DeleteRequestResolve(BaseModel):
    approve: bool
    note: str | None = Field(None, max_length=1000)


class DeleteRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    bank_account_id: UUID
    provider_id: UUID
    reason: str
    status: str
    resolution_note: str | None
    created_at: datetime
    resolved_at: datetime | None
