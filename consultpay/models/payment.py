"""Payment attempt models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from consultpay.database import Base, JSONType, UTCDateTime, utcnow


class Transaction(Base):
    """One payment attempt on a booking.

    The gateway order id is the reconciliation idempotency key: it is unique
    per gateway, and at most one transaction per booking may be completed.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("gateway", "gateway_order_id", name="uq_transactions_gateway_order"),
        Index(
            "uq_transactions_booking_completed",
            "booking_id",
            unique=True,
            postgresql_where=text("status = 'completed'"),
            sqlite_where=text("status = 'completed'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Local reference, known before the gateway is called
    reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    gateway: Mapped[str] = mapped_column(String(30), nullable=False)  # cashfree, paypal, stripe
    gateway_order_id: Mapped[str | None] = mapped_column(String(100))
    capture_id: Mapped[str | None] = mapped_column(String(100))

    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # in paise
    currency: Mapped[str] = mapped_column(String(3), default="INR")

    # pending, completed, failed, refunded
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    gateway_status: Mapped[str | None] = mapped_column(String(40))
    gateway_response: Mapped[dict | None] = mapped_column(JSONType)
    # Set before a refund is sent; a cancellation may refund part of the amount
    refund_amount: Mapped[int | None] = mapped_column(Integer)
    gateway_refund_id: Mapped[str | None] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime)


class ExpiredOrder(Base):
    """Tombstone for a gateway order whose booking was purged unpaid.

    Survives the purge so a payment that lands afterwards can still be
    matched and refunded exactly once.
    """

    __tablename__ = "expired_orders"
    __table_args__ = (
        UniqueConstraint("gateway", "gateway_order_id", name="uq_expired_orders_gateway_order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    gateway: Mapped[str] = mapped_column(String(30), nullable=False)
    gateway_order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Plain ids: the rows they pointed to are gone
    booking_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    seeker_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR")

    # none, pending, refunded, failed, manual_review
    refund_status: Mapped[str] = mapped_column(String(20), default="none")
    capture_id: Mapped[str | None] = mapped_column(String(100))
    gateway_refund_id: Mapped[str | None] = mapped_column(String(100))
    refund_error: Mapped[str | None] = mapped_column(Text)

    expired_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
