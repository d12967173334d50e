"""Earnings schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class EarningsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_id: UUID
    gross_amount: int
    commission_rate: Decimal
    commission_amount: int
    net_amount: int
    status: str
    dispute_deadline: datetime
    approved_at: datetime | None
    approved_by: str | None
    created_at: datetime


class BalanceResponse(BaseModel):
    """Provider balance in paise."""

    pending: int
    disputed: int
    approved: int
    paid_out: int
    reversed: int
    allocated: int
    available: int
    earnings: list[EarningsResponse] = []


class CommissionUpdate(BaseModel):
    commission_rate: Decimal | None = Field(None, ge=0, le=1, description="Fraction, null for platform default")
