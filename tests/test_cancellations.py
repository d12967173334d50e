"""Tests for participant cancellation and its tiered refund."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from consultpay.core.exceptions import AuthorizationError, PreconditionFailed
from consultpay.database import utcnow
from consultpay.domain.cancellation_policy import calculate_refund_amount, calculate_refund_percentage
from consultpay.models.booking import Booking
from consultpay.models.financial import SettlementLedgerEntry
from consultpay.models.payment import Transaction
from consultpay.services.ledger_store import reload


async def paid_transaction(db, booking_id) -> Transaction:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.booking_id == booking_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def refund_entries(db) -> list[SettlementLedgerEntry]:
    result = await db.execute(select(SettlementLedgerEntry).where(SettlementLedgerEntry.entry_type == "refund_issued"))
    return list(result.scalars().all())


class TestRefundPolicy:
    @pytest.mark.parametrize(
        "notice, expected",
        [
            (timedelta(days=2), Decimal("100")),
            (timedelta(hours=24, seconds=1), Decimal("100")),
            (timedelta(hours=24), Decimal("50")),
            (timedelta(hours=3), Decimal("50")),
            (timedelta(hours=2), Decimal("0")),
            (timedelta(minutes=30), Decimal("0")),
            (-timedelta(minutes=10), Decimal("0")),
        ],
    )
    def test_percentage_by_notice(self, notice, expected):
        start = utcnow()
        assert calculate_refund_percentage(start, start - notice) == expected

    def test_half_refund_rounds_half_up(self):
        start = utcnow()
        assert calculate_refund_amount(100001, start, start - timedelta(hours=5)) == 50001

    def test_full_refund_is_exact(self):
        start = utcnow()
        assert calculate_refund_amount(123457, start, start - timedelta(days=3)) == 123457


class TestCancelUnpaidBooking:
    async def test_pending_booking_cancels_without_refund(
        self, db, cancellations, make_booking, seeker, payment_gateway
    ):
        booking = await make_booking()

        result = await cancellations.cancel_booking(db, booking.id, seeker, reason="Found another slot")

        assert result.refund_amount == 0
        assert result.refund_status == "none"
        assert result.booking.status == "cancelled"
        assert result.booking.cancelled_by == seeker.id
        assert result.booking.cancellation_reason == "Found another slot"
        assert result.booking.cancelled_at is not None
        assert payment_gateway.refund_calls == 0

    async def test_payment_in_progress_cannot_be_cancelled(self, db, cancellations, make_booking, seeker):
        booking = await make_booking(status="payment_pending")
        with pytest.raises(PreconditionFailed):
            await cancellations.cancel_booking(db, booking.id, seeker)
        assert (await reload(db, Booking, booking.id)).status == "payment_pending"


class TestCancelPaidBooking:
    async def test_early_cancellation_refunds_everything(
        self, db, cancellations, make_paid_booking, seeker, payment_gateway, notifier
    ):
        booking = await make_paid_booking(amount=100000, starts_in=timedelta(days=3))

        result = await cancellations.cancel_booking(db, booking.id, seeker)

        assert result.refund_amount == 100000
        assert result.refund_status == "refunded"
        transaction = await paid_transaction(db, booking.id)
        assert transaction.status == "refunded"
        assert transaction.refund_amount == 100000
        assert transaction.gateway_refund_id == f"refund_{transaction.gateway_order_id}"
        [entry] = await refund_entries(db)
        assert entry.amount == 100000
        assert entry.booking_id == booking.id
        assert {subject for _, subject in notifier.emails} == {"Session cancelled"}
        assert {to for to, _ in notifier.emails} == {"seeker@example.com", "provider@example.com"}

    async def test_cancellation_within_a_day_refunds_half(
        self, db, cancellations, make_paid_booking, seeker, payment_gateway
    ):
        booking = await make_paid_booking(amount=100000, starts_in=timedelta(hours=12))

        result = await cancellations.cancel_booking(db, booking.id, seeker)

        assert result.refund_amount == 50000
        transaction = await paid_transaction(db, booking.id)
        assert transaction.status == "refunded"
        assert transaction.refund_amount == 50000
        assert [e.amount for e in await refund_entries(db)] == [50000]

    async def test_late_cancellation_refunds_nothing(
        self, db, cancellations, make_paid_booking, provider_user, payment_gateway
    ):
        booking = await make_paid_booking(amount=100000, starts_in=timedelta(hours=1))

        result = await cancellations.cancel_booking(db, booking.id, provider_user)

        assert result.refund_amount == 0
        assert result.refund_status == "none"
        assert result.booking.status == "cancelled"
        assert payment_gateway.refund_calls == 0
        transaction = await paid_transaction(db, booking.id)
        assert transaction.status == "completed"
        assert transaction.refund_amount is None

    async def test_provider_can_cancel(self, db, cancellations, make_paid_booking, provider_user):
        booking = await make_paid_booking(starts_in=timedelta(days=3))

        result = await cancellations.cancel_booking(db, booking.id, provider_user, reason="Unwell")

        assert result.booking.status == "cancelled"
        assert result.booking.cancelled_by == provider_user.id
        assert result.refund_status == "refunded"

    async def test_outsider_cannot_cancel(self, db, cancellations, make_paid_booking, staff):
        booking = await make_paid_booking(starts_in=timedelta(days=3))
        with pytest.raises(AuthorizationError):
            await cancellations.cancel_booking(db, booking.id, staff)
        assert (await reload(db, Booking, booking.id)).status == "confirmed"

    async def test_completed_session_cannot_be_cancelled(self, db, cancellations, make_paid_booking, seeker):
        booking = await make_paid_booking(starts_in=-timedelta(hours=3))
        booking.status = "completed"
        await db.commit()

        with pytest.raises(PreconditionFailed):
            await cancellations.cancel_booking(db, booking.id, seeker)

    async def test_cannot_cancel_twice(self, db, cancellations, make_paid_booking, seeker, payment_gateway):
        booking = await make_paid_booking(starts_in=timedelta(days=3))
        await cancellations.cancel_booking(db, booking.id, seeker)

        with pytest.raises(PreconditionFailed):
            await cancellations.cancel_booking(db, booking.id, seeker)
        assert payment_gateway.refund_calls == 1


class TestRefundFailures:
    async def test_rejected_refund_can_be_retried(
        self, db, cancellations, make_paid_booking, seeker, payment_gateway
    ):
        booking = await make_paid_booking(amount=100000, starts_in=timedelta(hours=12))
        payment_gateway.reject_refunds = True

        result = await cancellations.cancel_booking(db, booking.id, seeker)

        assert result.refund_status == "failed"
        assert result.booking.status == "cancelled"
        transaction = await paid_transaction(db, booking.id)
        assert transaction.status == "completed"
        assert transaction.refund_amount == 50000
        assert await refund_entries(db) == []

        payment_gateway.reject_refunds = False
        transaction = await cancellations.retry_refund(db, booking.id)

        assert transaction.status == "refunded"
        assert transaction.refund_amount == 50000
        assert payment_gateway.refund_calls == 2
        assert [e.amount for e in await refund_entries(db)] == [50000]

    async def test_outage_leaves_refund_for_later(
        self, db, cancellations, make_paid_booking, seeker, payment_gateway
    ):
        booking = await make_paid_booking(starts_in=timedelta(days=3))
        payment_gateway.unavailable = True

        result = await cancellations.cancel_booking(db, booking.id, seeker)

        assert result.refund_status == "retry_later"
        assert (await paid_transaction(db, booking.id)).status == "completed"

    async def test_retry_is_idempotent(self, db, cancellations, make_paid_booking, seeker, payment_gateway):
        booking = await make_paid_booking(starts_in=timedelta(days=3))
        await cancellations.cancel_booking(db, booking.id, seeker)

        transaction = await cancellations.retry_refund(db, booking.id)

        assert transaction.status == "refunded"
        assert payment_gateway.refund_calls == 1
        assert len(await refund_entries(db)) == 1

    async def test_nothing_to_retry_without_a_refund(self, db, cancellations, make_paid_booking, provider_user):
        booking = await make_paid_booking(starts_in=timedelta(hours=1))
        await cancellations.cancel_booking(db, booking.id, provider_user)

        with pytest.raises(PreconditionFailed):
            await cancellations.retry_refund(db, booking.id)

    async def test_retry_requires_cancelled_booking(self, db, cancellations, make_paid_booking):
        booking = await make_paid_booking(starts_in=timedelta(days=3))
        with pytest.raises(PreconditionFailed):
            await cancellations.retry_refund(db, booking.id)
