"""Settlement ledger.

Every money movement (payment in, refund out, payout out) is one immutable
entry.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import Date, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from consultpay.database import Base, UTCDateTime, utcnow


class SettlementLedgerEntry(Base):
    """Ledger entry for financial reconciliation."""

    __tablename__ = "settlement_ledger"
    __table_args__ = (
        # One entry per event per source record
        UniqueConstraint("entry_type", "source_id", name="uq_settlement_ledger_entry_source"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    entry_type: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # payment_received, refund_issued, payout_released
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # credit, debit

    # Always positive; direction gives the flow
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR")

    # Transaction, expired order or payout id the entry was derived from
    source_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    payout_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)

    counterparty_type: Mapped[str] = mapped_column(String(20), nullable=False)  # seeker, provider
    counterparty_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)

    gateway: Mapped[str | None] = mapped_column(String(30))
    gateway_reference: Mapped[str | None] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text)

    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
