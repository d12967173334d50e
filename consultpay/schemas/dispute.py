"""Dispute schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class DisputeCreate(BaseModel):
    booking_id: UUID
    reason: str = Field(..., min_length=3, max_length=200)
    description: str | None = Field(None, max_length=5000)


class DisputeResolve(BaseModel):
    resolution: str = Field(..., pattern="^(favor_provider|refund_seeker)$")
    note: str | None = Field(None, max_length=5000)


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_id: UUID
    raised_by: UUID
    reason: str
    description: str | None
    status: str
    resolution: str | None
    resolution_note: str | None
    created_at: datetime
    resolved_at: datetime | None
