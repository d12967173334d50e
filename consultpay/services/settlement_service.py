"""Settlement ledger service.

Every money movement (payment received, refund issued, payout released) is
written once as an append-only ledger entry keyed by its source row.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.core.exceptions import ValidationError
from consultpay.models.booking import Booking
from consultpay.models.financial import SettlementLedgerEntry
from consultpay.models.payment import ExpiredOrder, Transaction
from consultpay.models.payout import Payout


def assert_positive_amount(amount: int, context: str) -> None:
    """Guard: Prevent negative or zero amounts."""
    if amount <= 0:
        raise ValidationError(f"{context}: amount must be positive, got {amount}")


def assert_no_duplicate_ledger_entry(
    existing_entry: SettlementLedgerEntry | None, entry_type: str, source_id: UUID
) -> None:
    """Guard: Prevent duplicate ledger entries for the same operation."""
    if existing_entry is not None:
        raise ValidationError(f"Duplicate {entry_type} ledger entry for source {source_id}")


class SettlementService:
    """Service for settlement ledger entries."""

    async def _find_entry(
        self, db: AsyncSession, entry_type: str, source_id: UUID
    ) -> SettlementLedgerEntry | None:
        result = await db.execute(
            select(SettlementLedgerEntry).where(
                SettlementLedgerEntry.entry_type == entry_type,
                SettlementLedgerEntry.source_id == source_id,
            )
        )
        return result.scalar_one_or_none()

    async def record_payment_received(
        self,
        db: AsyncSession,
        transaction: Transaction,
        booking: Booking,
    ) -> SettlementLedgerEntry:
        """Record a confirmed payment.

        Args:
            db: Database session
            transaction: Completed transaction
            booking: Associated booking

        Returns:
            SettlementLedgerEntry: Ledger entry
        """
        assert_positive_amount(transaction.amount, "Payment")
        assert_no_duplicate_ledger_entry(
            await self._find_entry(db, "payment_received", transaction.id),
            "payment_received",
            transaction.id,
        )

        entry = SettlementLedgerEntry(
            entry_type="payment_received",
            direction="credit",
            amount=transaction.amount,
            currency=transaction.currency,
            source_id=transaction.id,
            booking_id=booking.id,
            counterparty_type="seeker",
            counterparty_id=booking.seeker_id,
            gateway=transaction.gateway,
            gateway_reference=transaction.capture_id or transaction.gateway_order_id,
            description=f"Payment for booking {booking.id}",
            effective_date=datetime.now(UTC).date(),
        )
        db.add(entry)
        return entry

    async def record_refund_issued(
        self,
        db: AsyncSession,
        source_id: UUID,
        amount: int,
        currency: str,
        booking_id: UUID,
        seeker_id: UUID,
        gateway: str,
        gateway_reference: str | None,
        description: str,
    ) -> SettlementLedgerEntry:
        """Record a refund to a seeker.

        The source is either the refunded Transaction (dispute refund) or
        the ExpiredOrder tombstone (late payment refund).
        """
        assert_positive_amount(amount, "Refund")
        assert_no_duplicate_ledger_entry(
            await self._find_entry(db, "refund_issued", source_id), "refund_issued", source_id
        )

        entry = SettlementLedgerEntry(
            entry_type="refund_issued",
            direction="debit",
            amount=amount,
            currency=currency,
            source_id=source_id,
            booking_id=booking_id,
            counterparty_type="seeker",
            counterparty_id=seeker_id,
            gateway=gateway,
            gateway_reference=gateway_reference,
            description=description,
            effective_date=datetime.now(UTC).date(),
        )
        db.add(entry)
        return entry

    async def record_late_payment_refund(
        self, db: AsyncSession, tombstone: ExpiredOrder
    ) -> SettlementLedgerEntry:
        return await self.record_refund_issued(
            db,
            source_id=tombstone.id,
            amount=tombstone.amount,
            currency=tombstone.currency,
            booking_id=tombstone.booking_id,
            seeker_id=tombstone.seeker_id,
            gateway=tombstone.gateway,
            gateway_reference=tombstone.gateway_refund_id,
            description=f"Late payment refund for expired booking {tombstone.booking_id}",
        )

    async def record_payout_released(
        self,
        db: AsyncSession,
        payout: Payout,
    ) -> SettlementLedgerEntry:
        """Record money leaving the platform to a provider's bank."""
        amount = payout.actual_amount or payout.requested_amount
        assert_positive_amount(amount, "Payout")
        assert_no_duplicate_ledger_entry(
            await self._find_entry(db, "payout_released", payout.id),
            "payout_released",
            payout.id,
        )

        entry = SettlementLedgerEntry(
            entry_type="payout_released",
            direction="debit",
            amount=amount,
            currency=payout.currency,
            source_id=payout.id,
            payout_id=payout.id,
            counterparty_type="provider",
            counterparty_id=payout.provider_id,
            gateway="cashfree_payouts",
            gateway_reference=payout.gateway_transfer_reference or payout.transfer_id,
            description=f"Payout {payout.transfer_id}",
            effective_date=datetime.now(UTC).date(),
        )
        db.add(entry)
        return entry

    async def get_ledger_balance(self, db: AsyncSession) -> dict[str, int]:
        """Totals per entry type plus the net platform position."""
        result = await db.execute(
            select(
                SettlementLedgerEntry.entry_type,
                SettlementLedgerEntry.direction,
                func.coalesce(func.sum(SettlementLedgerEntry.amount), 0),
            ).group_by(SettlementLedgerEntry.entry_type, SettlementLedgerEntry.direction)
        )
        totals: dict[str, int] = {}
        net = 0
        for entry_type, direction, amount in result.all():
            totals[entry_type] = totals.get(entry_type, 0) + int(amount)
            net += int(amount) if direction == "credit" else -int(amount)
        totals["net"] = net
        return totals


settlement_service = SettlementService()
