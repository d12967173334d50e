"""Payout models: withdrawal requests, their funding lines and audit log."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from consultpay.database import Base, JSONType, UTCDateTime, utcnow


class Payout(Base):
    """A provider's withdrawal request.

    At most one payout per provider may be in flight; the partial unique
    index below enforces it in the database.
    """

    __tablename__ = "payouts"
    __table_args__ = (
        Index(
            "uq_payouts_provider_in_flight",
            "provider_id",
            unique=True,
            postgresql_where=text("status IN ('requested', 'approved', 'processing')"),
            sqlite_where=text("status IN ('requested', 'approved', 'processing')"),
        ),
        CheckConstraint("requested_amount > 0", name="requested_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=False, index=True
    )
    bank_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("provider_bank_accounts.id"), nullable=False, index=True
    )

    # Amounts in paise
    requested_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_fee: Mapped[int] = mapped_column(Integer, default=0)
    actual_amount: Mapped[int | None] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="INR")

    # requested, approved, processing, completed, rejected, failed
    status: Mapped[str] = mapped_column(String(20), default="requested", index=True)

    # Gateway transfer
    transfer_id: Mapped[str | None] = mapped_column(String(100), unique=True)
    gateway_transfer_reference: Mapped[str | None] = mapped_column(String(100))
    gateway_status: Mapped[str | None] = mapped_column(String(40))
    gateway_response: Mapped[dict | None] = mapped_column(JSONType)

    rejection_reason: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)

    approved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))

    # Timestamps
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, index=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    rejected_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    lines: Mapped[list["PayoutEarning"]] = relationship(
        "PayoutEarning", back_populates="payout", lazy="selectin", order_by="PayoutEarning.position"
    )


class PayoutEarning(Base):
    """Which earning funded which payout, and by how much.

    A released line no longer counts against the earning's available amount
    (the payout was rejected or failed).
    """

    __tablename__ = "payout_earnings"
    __table_args__ = (
        UniqueConstraint("payout_id", "earning_id", name="uq_payout_earnings_payout_earning"),
        CheckConstraint("amount > 0", name="amount_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payout_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payouts.id"), nullable=False, index=True
    )
    earning_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("provider_earnings.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    released: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    payout: Mapped["Payout"] = relationship("Payout", back_populates="lines")


class PayoutLog(Base):
    """Append-only audit entry for a payout."""

    __tablename__ = "payout_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payout_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payouts.id"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(
        String(40), nullable=False
    )  # requested, approved, rejected, processing, completed, failed, released, disbursement_deferred
    details: Mapped[dict | None] = mapped_column(JSONType)
    performed_by: Mapped[str] = mapped_column(String(64), nullable=False)  # user id or SYSTEM
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, index=True)
