"""Provider bank account models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, LargeBinary, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from consultpay.database import Base, UTCDateTime, utcnow


class ProviderBankAccount(Base):
    """Payout destination, proven by a penny test before use.

    One non-deleted account per provider, enforced by a partial unique index.
    """

    __tablename__ = "provider_bank_accounts"
    __table_args__ = (
        Index(
            "uq_provider_bank_accounts_current",
            "provider_id",
            unique=True,
            postgresql_where=text("status <> 'deleted'"),
            sqlite_where=text("status <> 'deleted'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=False, index=True
    )

    account_holder_name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_number_encrypted: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    account_number_masked: Mapped[str] = mapped_column(String(32), nullable=False)
    ifsc_code: Mapped[str] = mapped_column(String(11), nullable=False)
    bank_name: Mapped[str] = mapped_column(String(100), nullable=False)
    branch_name: Mapped[str | None] = mapped_column(String(100))
    account_type: Mapped[str] = mapped_column(String(10), default="savings")  # savings, current

    # pending, penny_test_sent, verified, rejected, deleted
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Penny test
    penny_test_amount: Mapped[int | None] = mapped_column(Integer)  # in paise
    penny_test_transfer_id: Mapped[str | None] = mapped_column(String(100), unique=True)
    penny_test_reference: Mapped[str | None] = mapped_column(String(100))
    verification_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    penny_test_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    rejected_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime)


class BankAccountDeleteRequest(Base):
    """Staff-reviewed request to retire a bank account."""

    __tablename__ = "bank_account_delete_requests"
    __table_args__ = (
        Index(
            "uq_bank_account_delete_requests_pending",
            "bank_account_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    bank_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("provider_bank_accounts.id"), nullable=False, index=True
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=False, index=True
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    # pending, approved, rejected
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))
    resolution_note: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
