"""Payment schemas."""

from uuid import UUID

from pydantic import BaseModel, Field


class PaymentInitiate(BaseModel):
    """Schema for starting a checkout."""

    booking_id: UUID
    gateway: str = Field(..., pattern="^(cashfree|paypal|stripe)$")


class PaymentSessionResponse(BaseModel):
    transaction_id: UUID
    reference: str
    gateway: str
    order_id: str
    pay_url: str | None = None
    client_secret: str | None = None
    amount: int
    currency: str


class PaymentStatusResponse(BaseModel):
    order_id: str
    outcome: str
    transaction_status: str | None = None
    booking_id: UUID | None = None
    booking_status: str | None = None
    message: str | None = None


class WebhookAck(BaseModel):
    received: bool = True
