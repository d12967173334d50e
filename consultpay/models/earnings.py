"""Provider earnings model."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from consultpay.database import Base, UTCDateTime, utcnow


class ProviderEarnings(Base):
    """Provider's share of one completed booking.

    Created exactly once per booking. The commission rate is a snapshot taken
    at creation and is never re-read from configuration.
    """

    __tablename__ = "provider_earnings"
    __table_args__ = (
        CheckConstraint(
            "commission_amount + net_amount = gross_amount", name="amounts_conserved"
        ),
        CheckConstraint("net_amount >= 0", name="net_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=False, index=True
    )

    # Amounts in paise
    gross_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    commission_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    net_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    # pending, disputed, approved, paid_out, reversed
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    dispute_deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    approved_by: Mapped[str | None] = mapped_column(String(64))  # "AUTO" or staff user id

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, index=True)
