"""Booking model."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from consultpay.database import Base, UTCDateTime, utcnow


class Booking(Base):
    """A scheduled consultation between a seeker and a provider."""

    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint("end_time > start_time", name="time_window"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seeker_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=False, index=True
    )

    # Session window
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Fixed at creation, in paise
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR")

    # pending, payment_pending, confirmed, completed, disputed, cancelled
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)

    meeting_url: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)

    # One-time session completion code (sha256 hex)
    completion_code_hash: Mapped[str | None] = mapped_column(String(64))
    completion_code_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    # Reminders
    reminder_24h_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    reminder_1h_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    # Participant cancellation
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
