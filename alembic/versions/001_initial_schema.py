"""Initial database schema.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-18

Creates all tables for the ConsultPay ledger:
- Users and providers
- Bookings
- Transactions and expired order tombstones
- Provider earnings
- Bank accounts and deletion requests
- Payouts, payout lines and payout logs
- Admin (audit logs, disputes) and the settlement ledger
"""

from typing import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

UUID = postgresql.UUID(as_uuid=True)
TIMESTAMP = sa.DateTime(timezone=True)

APPEND_ONLY_TABLES = ("settlement_ledger", "payout_logs", "audit_logs")


def upgrade() -> None:
    """Create all database tables."""

    # ==================== USERS ====================
    op.create_table(
        "users",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("phone", sa.String(20)),
        sa.Column("full_name", sa.String(200)),
        sa.Column("role", sa.String(20), nullable=False, server_default="seeker"),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now()),
    )

    op.create_table(
        "providers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id"), unique=True, nullable=False),
        sa.Column("display_name", sa.String(200), nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 4)),
        sa.Column("total_sessions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now()),
    )

    # ==================== BOOKINGS ====================
    op.create_table(
        "bookings",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("seeker_id", UUID, sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("provider_id", UUID, sa.ForeignKey("providers.id"), nullable=False, index=True),
        sa.Column("start_time", TIMESTAMP, nullable=False, index=True),
        sa.Column("end_time", TIMESTAMP, nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), server_default="INR"),
        sa.Column("status", sa.String(20), server_default="pending", index=True),
        sa.Column("meeting_url", sa.Text),
        sa.Column("notes", sa.Text),
        sa.Column("completion_code_hash", sa.String(64)),
        sa.Column("completion_code_expires_at", TIMESTAMP),
        sa.Column("reminder_24h_sent_at", TIMESTAMP),
        sa.Column("reminder_1h_sent_at", TIMESTAMP),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now()),
        sa.Column("confirmed_at", TIMESTAMP),
        sa.Column("completed_at", TIMESTAMP),
        sa.Column("cancelled_at", TIMESTAMP),
        sa.Column("cancelled_by", UUID),
        sa.Column("cancellation_reason", sa.Text),
        sa.CheckConstraint("amount > 0", name="ck_bookings_amount_positive"),
        sa.CheckConstraint("end_time > start_time", name="ck_bookings_time_window"),
    )

    # ==================== PAYMENTS ====================
    op.create_table(
        "transactions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "booking_id", UUID, sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
        ),
        sa.Column("reference", sa.String(64), unique=True, nullable=False),
        sa.Column("gateway", sa.String(30), nullable=False),
        sa.Column("gateway_order_id", sa.String(100)),
        sa.Column("capture_id", sa.String(100)),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), server_default="INR"),
        sa.Column("status", sa.String(20), server_default="pending", index=True),
        sa.Column("gateway_status", sa.String(40)),
        sa.Column("gateway_response", postgresql.JSONB),
        sa.Column("refund_amount", sa.Integer),
        sa.Column("gateway_refund_id", sa.String(100)),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now()),
        sa.Column("completed_at", TIMESTAMP),
        sa.Column("refunded_at", TIMESTAMP),
        sa.UniqueConstraint("gateway", "gateway_order_id", name="uq_transactions_gateway_order"),
    )
    # At most one completed payment per booking
    op.create_index(
        "uq_transactions_booking_completed",
        "transactions",
        ["booking_id"],
        unique=True,
        postgresql_where=sa.text("status = 'completed'"),
    )

    op.create_table(
        "expired_orders",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("gateway", sa.String(30), nullable=False),
        sa.Column("gateway_order_id", sa.String(100), nullable=False),
        sa.Column("booking_id", UUID, nullable=False, index=True),
        sa.Column("seeker_id", UUID, nullable=False),
        sa.Column("provider_id", UUID, nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), server_default="INR"),
        sa.Column("refund_status", sa.String(20), server_default="none"),
        sa.Column("capture_id", sa.String(100)),
        sa.Column("gateway_refund_id", sa.String(100)),
        sa.Column("refund_error", sa.Text),
        sa.Column("expired_at", TIMESTAMP, server_default=sa.func.now()),
        sa.Column("refunded_at", TIMESTAMP),
        sa.UniqueConstraint("gateway", "gateway_order_id", name="uq_expired_orders_gateway_order"),
    )

    # ==================== EARNINGS ====================
    op.create_table(
        "provider_earnings",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("booking_id", UUID, sa.ForeignKey("bookings.id"), unique=True, nullable=False),
        sa.Column("provider_id", UUID, sa.ForeignKey("providers.id"), nullable=False, index=True),
        sa.Column("gross_amount", sa.Integer, nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("commission_amount", sa.Integer, nullable=False),
        sa.Column("net_amount", sa.Integer, nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", index=True),
        sa.Column("dispute_deadline", TIMESTAMP, nullable=False, index=True),
        sa.Column("approved_at", TIMESTAMP),
        sa.Column("approved_by", sa.String(64)),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now(), index=True),
        sa.CheckConstraint(
            "commission_amount + net_amount = gross_amount", name="ck_provider_earnings_amounts_conserved"
        ),
        sa.CheckConstraint("net_amount >= 0", name="ck_provider_earnings_net_non_negative"),
    )

    # ==================== BANK ACCOUNTS ====================
    op.create_table(
        "provider_bank_accounts",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("provider_id", UUID, sa.ForeignKey("providers.id"), nullable=False, index=True),
        sa.Column("account_holder_name", sa.String(100), nullable=False),
        sa.Column("account_number_encrypted", sa.LargeBinary, nullable=False),
        sa.Column("account_number_masked", sa.String(32), nullable=False),
        sa.Column("ifsc_code", sa.String(11), nullable=False),
        sa.Column("bank_name", sa.String(100), nullable=False),
        sa.Column("branch_name", sa.String(100)),
        sa.Column("account_type", sa.String(10), server_default="savings"),
        sa.Column("status", sa.String(20), server_default="pending", index=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("penny_test_amount", sa.Integer),
        sa.Column("penny_test_transfer_id", sa.String(100), unique=True),
        sa.Column("penny_test_reference", sa.String(100)),
        sa.Column("verification_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now()),
        sa.Column("penny_test_sent_at", TIMESTAMP),
        sa.Column("verified_at", TIMESTAMP),
        sa.Column("rejected_at", TIMESTAMP),
        sa.Column("deleted_at", TIMESTAMP),
    )
    # One live account per provider
    op.create_index(
        "uq_provider_bank_accounts_current",
        "provider_bank_accounts",
        ["provider_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'deleted'"),
    )

    op.create_table(
        "bank_account_delete_requests",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "bank_account_id", UUID, sa.ForeignKey("provider_bank_accounts.id"), nullable=False, index=True
        ),
        sa.Column("provider_id", UUID, sa.ForeignKey("providers.id"), nullable=False, index=True),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", index=True),
        sa.Column("resolved_by", UUID, sa.ForeignKey("users.id")),
        sa.Column("resolution_note", sa.Text),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now()),
        sa.Column("resolved_at", TIMESTAMP),
    )
    op.create_index(
        "uq_bank_account_delete_requests_pending",
        "bank_account_delete_requests",
        ["bank_account_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    # ==================== PAYOUTS ====================
    op.create_table(
        "payouts",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("provider_id", UUID, sa.ForeignKey("providers.id"), nullable=False, index=True),
        sa.Column(
            "bank_account_id", UUID, sa.ForeignKey("provider_bank_accounts.id"), nullable=False, index=True
        ),
        sa.Column("requested_amount", sa.Integer, nullable=False),
        sa.Column("transaction_fee", sa.Integer, server_default="0"),
        sa.Column("actual_amount", sa.Integer),
        sa.Column("currency", sa.String(3), server_default="INR"),
        sa.Column("status", sa.String(20), server_default="requested", index=True),
        sa.Column("transfer_id", sa.String(100), unique=True),
        sa.Column("gateway_transfer_reference", sa.String(100)),
        sa.Column("gateway_status", sa.String(40)),
        sa.Column("gateway_response", postgresql.JSONB),
        sa.Column("rejection_reason", sa.Text),
        sa.Column("notes", sa.Text),
        sa.Column("approved_by", UUID, sa.ForeignKey("users.id")),
        sa.Column("requested_at", TIMESTAMP, server_default=sa.func.now(), index=True),
        sa.Column("approved_at", TIMESTAMP),
        sa.Column("rejected_at", TIMESTAMP),
        sa.Column("processed_at", TIMESTAMP),
        sa.Column("completed_at", TIMESTAMP),
        sa.Column("failed_at", TIMESTAMP),
        sa.CheckConstraint("requested_amount > 0", name="ck_payouts_requested_positive"),
    )
    # One in-flight payout per provider
    op.create_index(
        "uq_payouts_provider_in_flight",
        "payouts",
        ["provider_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('requested', 'approved', 'processing')"),
    )

    op.create_table(
        "payout_earnings",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("payout_id", UUID, sa.ForeignKey("payouts.id"), nullable=False, index=True),
        sa.Column("earning_id", UUID, sa.ForeignKey("provider_earnings.id"), nullable=False, index=True),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
        sa.Column("released", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("released_at", TIMESTAMP),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now()),
        sa.UniqueConstraint("payout_id", "earning_id", name="uq_payout_earnings_payout_earning"),
        sa.CheckConstraint("amount > 0", name="ck_payout_earnings_amount_positive"),
    )

    op.create_table(
        "payout_logs",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("payout_id", UUID, sa.ForeignKey("payouts.id"), nullable=False, index=True),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("details", postgresql.JSONB),
        sa.Column("performed_by", sa.String(64), nullable=False),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now(), index=True),
    )

    # ==================== ADMIN ====================
    op.create_table(
        "audit_logs",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id"), index=True),
        sa.Column("actor", sa.String(64), nullable=False, server_default="SYSTEM"),
        sa.Column("action", sa.String(100), nullable=False, index=True),
        sa.Column("resource_type", sa.String(50), nullable=False, index=True),
        sa.Column("resource_id", UUID, index=True),
        sa.Column("old_values", postgresql.JSONB),
        sa.Column("new_values", postgresql.JSONB),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now(), index=True),
    )

    op.create_table(
        "disputes",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("booking_id", UUID, sa.ForeignKey("bookings.id"), unique=True, nullable=False),
        sa.Column("raised_by", UUID, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reason", sa.String(200), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("status", sa.String(20), server_default="open", index=True),
        sa.Column("resolution", sa.String(30)),
        sa.Column("resolution_note", sa.Text),
        sa.Column("resolved_by", UUID, sa.ForeignKey("users.id")),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now()),
        sa.Column("reviewed_at", TIMESTAMP),
        sa.Column("resolved_at", TIMESTAMP),
    )

    # ==================== SETTLEMENT LEDGER ====================
    op.create_table(
        "settlement_ledger",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("entry_type", sa.String(30), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), server_default="INR"),
        sa.Column("source_id", UUID, nullable=False),
        sa.Column("booking_id", UUID, index=True),
        sa.Column("payout_id", UUID, index=True),
        sa.Column("counterparty_type", sa.String(20), nullable=False),
        sa.Column("counterparty_id", UUID),
        sa.Column("gateway", sa.String(30)),
        sa.Column("gateway_reference", sa.String(100)),
        sa.Column("description", sa.Text),
        sa.Column("effective_date", sa.Date, nullable=False),
        sa.Column("created_at", TIMESTAMP, server_default=sa.func.now()),
        sa.UniqueConstraint("entry_type", "source_id", name="uq_settlement_ledger_entry_source"),
    )

    # Ledger and audit rows are append-only
    op.execute(
        """
        CREATE FUNCTION reject_append_only_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% rows are append-only', TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    for table in APPEND_ONLY_TABLES:
        op.execute(
            f"CREATE TRIGGER {table}_append_only BEFORE UPDATE OR DELETE ON {table} "
            "FOR EACH ROW EXECUTE FUNCTION reject_append_only_mutation()"
        )


def downgrade() -> None:
    """Drop all tables in reverse order."""
    for table in APPEND_ONLY_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS {table}_append_only ON {table}")
    op.execute("DROP FUNCTION IF EXISTS reject_append_only_mutation()")

    op.drop_table("settlement_ledger")
    op.drop_table("disputes")
    op.drop_table("audit_logs")
    op.drop_table("payout_logs")
    op.drop_table("payout_earnings")
    op.drop_index("uq_payouts_provider_in_flight", table_name="payouts")
    op.drop_table("payouts")
    op.drop_index("uq_bank_account_delete_requests_pending", table_name="bank_account_delete_requests")
    op.drop_table("bank_account_delete_requests")
    op.drop_index("uq_provider_bank_accounts_current", table_name="provider_bank_accounts")
    op.drop_table("provider_bank_accounts")
    op.drop_table("provider_earnings")
    op.drop_table("expired_orders")
    op.drop_index("uq_transactions_booking_completed", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("bookings")
    op.drop_table("providers")
    op.drop_table("users")
