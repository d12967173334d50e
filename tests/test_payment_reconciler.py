"""Tests for payment initiation, reconciliation, expiry and late payments."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from consultpay.config import settings
from consultpay.core.exceptions import AuthorizationError, PreconditionFailed
from consultpay.database import utcnow
from consultpay.models.admin import AuditLog
from consultpay.models.booking import Booking
from consultpay.models.financial import SettlementLedgerEntry
from consultpay.models.payment import ExpiredOrder, Transaction
from consultpay.models.user import Provider
from consultpay.services.ledger_store import reload
from consultpay.services.payment_reconciler import ReconcileOutcome


async def ledger_entries(db, entry_type: str) -> list[SettlementLedgerEntry]:
    result = await db.execute(select(SettlementLedgerEntry).where(SettlementLedgerEntry.entry_type == entry_type))
    return list(result.scalars().all())


async def close_payment_window(db, booking_id):
    """Move the session close enough that the payment deadline has passed."""
    start = utcnow() + timedelta(minutes=30)
    await db.execute(
        update(Booking).where(Booking.id == booking_id).values(start_time=start, end_time=start + timedelta(hours=1))
    )
    await db.commit()


class TestInitiatePayment:
    async def test_creates_pending_transaction(self, db, reconciler, make_booking, seeker):
        booking = await make_booking()

        transaction, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)

        assert transaction.status == "pending"
        assert transaction.gateway_order_id == session.order_id
        assert transaction.amount == booking.amount
        booking = await reload(db, Booking, booking.id)
        assert booking.status == "payment_pending"

    async def test_retry_keeps_booking_payment_pending(self, db, reconciler, make_booking, seeker):
        """A second checkout for the same booking opens a new order."""
        booking = await make_booking()
        first, _ = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        second, _ = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)

        assert first.gateway_order_id != second.gateway_order_id
        count = await db.execute(select(func.count(Transaction.id)).where(Transaction.booking_id == booking.id))
        assert count.scalar_one() == 2

    async def test_only_seeker_can_pay(self, db, reconciler, make_booking, provider_user):
        booking = await make_booking()
        with pytest.raises(AuthorizationError):
            await reconciler.initiate_payment(db, booking.id, "cashfree", provider_user)

    async def test_window_closed(self, db, reconciler, make_booking, seeker):
        booking = await make_booking(starts_in=timedelta(minutes=45))
        with pytest.raises(PreconditionFailed):
            await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)

    async def test_confirmed_booking_cannot_be_paid_again(self, db, reconciler, make_booking, seeker):
        booking = await make_booking(status="confirmed")
        with pytest.raises(PreconditionFailed):
            await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)

    async def test_gateway_outage_fails_transaction(self, db, reconciler, make_booking, seeker, payment_gateway):
        from consultpay.core.exceptions import GatewayUnavailable

        booking = await make_booking()
        payment_gateway.unavailable = True
        with pytest.raises(GatewayUnavailable):
            await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)

        result = await db.execute(select(Transaction).where(Transaction.booking_id == booking.id))
        assert result.scalar_one().status == "failed"

    async def test_concurrent_checkouts_audit_one_transition(
        self, session_factory, db, reconciler, make_booking, seeker
    ):
        """Two checkouts opened at once: both get an order, the booking moves once."""
        booking = await make_booking()

        async def initiate():
            async with session_factory() as session:
                return await reconciler.initiate_payment(session, booking.id, "cashfree", seeker)

        results = await asyncio.gather(initiate(), initiate())

        assert len({session.order_id for _, session in results}) == 2
        assert (await reload(db, Booking, booking.id)).status == "payment_pending"
        audits = await db.execute(
            select(func.count(AuditLog.id)).where(
                AuditLog.resource_id == booking.id, AuditLog.action == "booking_payment_pending"
            )
        )
        assert audits.scalar_one() == 1


class TestReconcile:
    async def test_paid_order_confirms_booking(
        self, db, reconciler, make_booking, seeker, provider, payment_gateway, notifier
    ):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.mark_paid(session.order_id)

        outcome = await reconciler.reconcile(db, "cashfree", session.order_id, source="webhook")

        assert outcome == ReconcileOutcome.CONFIRMED
        booking = await reload(db, Booking, booking.id)
        assert booking.status == "confirmed"
        assert booking.meeting_url.startswith("https://meet.test/")
        transaction = await reconciler.find_transaction(db, session.order_id)
        assert transaction.status == "completed"
        assert transaction.capture_id == f"cap_{session.order_id}"

        entries = await ledger_entries(db, "payment_received")
        assert [e.amount for e in entries] == [booking.amount]
        provider = await reload(db, Provider, provider.id)
        assert provider.total_sessions == 1
        assert {to for to, _ in notifier.emails} == {"seeker@example.com", "provider@example.com"}

    async def test_duplicate_notifications_are_idempotent(self, db, reconciler, make_booking, seeker, payment_gateway):
        """Webhook, redirect and poll for the same order confirm once."""
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.mark_paid(session.order_id)

        outcomes = [
            await reconciler.reconcile(db, "cashfree", session.order_id, source=source)
            for source in ("webhook", "redirect", "poll")
        ]

        assert outcomes == [
            ReconcileOutcome.CONFIRMED,
            ReconcileOutcome.ALREADY_CONFIRMED,
            ReconcileOutcome.ALREADY_CONFIRMED,
        ]
        assert len(await ledger_entries(db, "payment_received")) == 1

    async def test_pending_order_leaves_booking_alone(self, db, reconciler, make_booking, seeker):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)

        outcome = await reconciler.reconcile(db, "cashfree", session.order_id, source="poll")

        assert outcome == ReconcileOutcome.PENDING
        booking = await reload(db, Booking, booking.id)
        assert booking.status == "payment_pending"

    async def test_failed_payment_cancels_booking(self, db, reconciler, make_booking, seeker, payment_gateway):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.mark_failed(session.order_id)

        outcome = await reconciler.reconcile(db, "cashfree", session.order_id, source="webhook")

        assert outcome == ReconcileOutcome.FAILED
        booking = await reload(db, Booking, booking.id)
        assert booking.status == "cancelled"
        transaction = await reconciler.find_transaction(db, session.order_id)
        assert transaction.status == "failed"
        assert await ledger_entries(db, "payment_received") == []

    async def test_gateway_outage_defers(self, db, reconciler, make_booking, seeker, payment_gateway):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.mark_paid(session.order_id)
        payment_gateway.unavailable = True

        outcome = await reconciler.reconcile(db, "cashfree", session.order_id, source="webhook")

        assert outcome == ReconcileOutcome.RETRY_LATER
        transaction = await reconciler.find_transaction(db, session.order_id)
        assert transaction.status == "pending"

    async def test_approved_order_is_captured(self, db, reconciler, make_booking, seeker, payment_gateway):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.mark_approved(session.order_id)

        outcome = await reconciler.reconcile(db, "cashfree", session.order_id, source="redirect")

        assert outcome == ReconcileOutcome.CONFIRMED
        assert payment_gateway.captures == [session.order_id]

    async def test_approved_order_past_deadline_is_not_captured(
        self, db, reconciler, make_booking, seeker, payment_gateway
    ):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        await close_payment_window(db, booking.id)
        payment_gateway.mark_approved(session.order_id)

        outcome = await reconciler.reconcile(db, "cashfree", session.order_id, source="redirect")

        assert outcome == ReconcileOutcome.EXPIRED
        assert payment_gateway.captures == []
        assert await reload(db, Booking, booking.id) is None

    async def test_unknown_order(self, db, reconciler):
        outcome = await reconciler.reconcile(db, "cashfree", "order_nobody_knows", source="webhook")
        assert outcome == ReconcileOutcome.UNKNOWN_ORDER

    async def test_second_paid_order_is_refunded(self, db, reconciler, make_booking, seeker, payment_gateway):
        """Two checkouts both paid: the first confirms, the second is refunded."""
        booking = await make_booking()
        _, first = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        _, second = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.mark_paid(first.order_id)
        payment_gateway.mark_paid(second.order_id)

        assert await reconciler.reconcile(db, "cashfree", first.order_id, "webhook") == ReconcileOutcome.CONFIRMED
        outcome = await reconciler.reconcile(db, "cashfree", second.order_id, "webhook")

        assert outcome == ReconcileOutcome.LATE_PAYMENT_REFUNDED
        assert second.order_id in payment_gateway.refunds
        assert len(await ledger_entries(db, "payment_received")) == 1
        assert len(await ledger_entries(db, "refund_issued")) == 1

    async def test_concurrent_reconcile_confirms_once(
        self, session_factory, db, reconciler, make_booking, seeker, provider, payment_gateway
    ):
        """Webhook and redirect for the same order arriving together."""
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.mark_paid(session.order_id)

        async def deliver(source):
            async with session_factory() as s:
                return await reconciler.reconcile(s, "cashfree", session.order_id, source=source)

        outcomes = await asyncio.gather(deliver("webhook"), deliver("redirect"), deliver("poll"))

        assert sorted(o.value for o in outcomes) == ["already_confirmed", "already_confirmed", "confirmed"]
        assert (await reload(db, Booking, booking.id)).status == "confirmed"
        assert (await reload(db, Provider, provider.id)).total_sessions == 1
        assert len(await ledger_entries(db, "payment_received")) == 1

    async def test_rejected_lookup_leaves_open_booking(self, db, reconciler, make_booking, seeker, payment_gateway):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.rejected_orders.add(session.order_id)

        outcome = await reconciler.reconcile(db, "cashfree", session.order_id, source="webhook")

        assert outcome == ReconcileOutcome.REJECTED
        assert (await reload(db, Booking, booking.id)).status == "payment_pending"
        assert (await reconciler.find_transaction(db, session.order_id)).status == "pending"

    async def test_rejected_lookup_past_deadline_expires_booking(
        self, db, reconciler, make_booking, seeker, payment_gateway
    ):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.rejected_orders.add(session.order_id)
        await close_payment_window(db, booking.id)

        outcome = await reconciler.reconcile(db, "cashfree", session.order_id, source="poll")

        assert outcome == ReconcileOutcome.EXPIRED
        assert await reload(db, Booking, booking.id) is None
        tombstone = await db.execute(select(ExpiredOrder).where(ExpiredOrder.gateway_order_id == session.order_id))
        assert tombstone.scalar_one().refund_status == "none"


class TestLatePayments:
    async def test_paid_after_deadline_is_refunded(self, db, reconciler, make_booking, seeker, payment_gateway):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        await close_payment_window(db, booking.id)
        payment_gateway.mark_paid(session.order_id)

        outcome = await reconciler.reconcile(db, "cashfree", session.order_id, source="webhook")

        assert outcome == ReconcileOutcome.LATE_PAYMENT_REFUNDED
        assert await reload(db, Booking, booking.id) is None
        result = await db.execute(select(ExpiredOrder).where(ExpiredOrder.gateway_order_id == session.order_id))
        tombstone = result.scalar_one()
        assert tombstone.refund_status == "refunded"
        assert tombstone.gateway_refund_id == f"refund_{session.order_id}"
        refunds = await ledger_entries(db, "refund_issued")
        assert [(e.amount, e.source_id) for e in refunds] == [(booking.amount, tombstone.id)]

    async def test_webhook_after_purge_refunds_once(self, db, reconciler, make_booking, seeker, payment_gateway):
        """The tombstone left by expiry still matches a late webhook, and only one refund goes out."""
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        await close_payment_window(db, booking.id)

        assert await reconciler.purge_expired_bookings(db) == 1
        assert await reload(db, Booking, booking.id) is None

        payment_gateway.mark_paid(session.order_id)
        first = await reconciler.reconcile(db, "cashfree", session.order_id, source="webhook")
        second = await reconciler.reconcile(db, "cashfree", session.order_id, source="poll")

        assert first == ReconcileOutcome.LATE_PAYMENT_REFUNDED
        assert second == ReconcileOutcome.LATE_PAYMENT_REFUNDED
        assert payment_gateway.refund_calls == 1
        assert len(await ledger_entries(db, "refund_issued")) == 1

    async def test_rejected_refund_is_flagged(self, db, reconciler, make_booking, seeker, payment_gateway):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        await close_payment_window(db, booking.id)
        payment_gateway.mark_paid(session.order_id)
        payment_gateway.reject_refunds = True

        outcome = await reconciler.reconcile(db, "cashfree", session.order_id, source="webhook")

        assert outcome == ReconcileOutcome.REFUND_FAILED
        result = await db.execute(select(ExpiredOrder).where(ExpiredOrder.gateway_order_id == session.order_id))
        tombstone = result.scalar_one()
        assert tombstone.refund_status == "failed"
        assert tombstone.refund_error == "refund declined"
        assert await ledger_entries(db, "refund_issued") == []

    async def test_manual_review_when_auto_refund_disabled(
        self, db, reconciler, make_booking, seeker, payment_gateway, monkeypatch
    ):
        monkeypatch.setattr(settings, "auto_refund_late_payments", False)
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        await close_payment_window(db, booking.id)
        payment_gateway.mark_paid(session.order_id)

        outcome = await reconciler.reconcile(db, "cashfree", session.order_id, source="webhook")

        assert outcome == ReconcileOutcome.LATE_PAYMENT_REVIEW
        assert payment_gateway.refund_calls == 0


class TestPurge:
    async def test_purges_unpaid_booking_past_deadline(self, db, reconciler, make_booking):
        expired = await make_booking(starts_in=timedelta(minutes=30))
        upcoming = await make_booking(starts_in=timedelta(days=2))

        assert await reconciler.purge_expired_bookings(db) == 1

        assert await reload(db, Booking, expired.id) is None
        assert await reload(db, Booking, upcoming.id) is not None

    async def test_paid_order_found_during_purge_is_refunded(
        self, db, reconciler, make_booking, seeker, payment_gateway
    ):
        """A payment nobody reported is found by the purge and refunded."""
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.mark_paid(session.order_id)
        await close_payment_window(db, booking.id)

        assert await reconciler.purge_expired_bookings(db) == 0

        assert await reload(db, Booking, booking.id) is None
        assert session.order_id in payment_gateway.refunds

    async def test_gateway_outage_defers_purge(self, db, reconciler, make_booking, seeker, payment_gateway):
        booking = await make_booking()
        await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        await close_payment_window(db, booking.id)
        payment_gateway.unavailable = True

        assert await reconciler.purge_expired_bookings(db) == 0
        assert await reload(db, Booking, booking.id) is not None

    async def test_leaves_confirmed_bookings(self, db, reconciler, make_paid_booking):
        booking = await make_paid_booking(starts_in=timedelta(minutes=10))
        assert await reconciler.purge_expired_bookings(db) == 0
        assert (await reload(db, Booking, booking.id)).status == "confirmed"

    async def test_rejected_order_does_not_block_purge(self, db, reconciler, make_booking, seeker, payment_gateway):
        """An order the gateway no longer knows is unpaid; the rest of the batch still runs."""
        first = await make_booking(starts_in=timedelta(days=2))
        second = await make_booking(starts_in=timedelta(days=2))
        _, rejected = await reconciler.initiate_payment(db, first.id, "cashfree", seeker)
        await reconciler.initiate_payment(db, second.id, "cashfree", seeker)
        payment_gateway.rejected_orders.add(rejected.order_id)

        assert await reconciler.purge_expired_bookings(db, now=first.start_time) == 2

        assert await reload(db, Booking, first.id) is None
        assert await reload(db, Booking, second.id) is None

    async def test_rejected_order_past_deadline_is_purged(
        self, db, reconciler, make_booking, seeker, payment_gateway
    ):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.rejected_orders.add(session.order_id)
        await close_payment_window(db, booking.id)

        assert await reconciler.purge_expired_bookings(db) == 1
        assert await reload(db, Booking, booking.id) is None


class TestPollPendingTransactions:
    async def test_polls_old_pending_orders(self, db, reconciler, make_booking, seeker, payment_gateway):
        booking = await make_booking()
        _, session = await reconciler.initiate_payment(db, booking.id, "cashfree", seeker)
        payment_gateway.mark_paid(session.order_id)

        counts = await reconciler.poll_pending_transactions(db, min_age_minutes=0)

        assert counts == {"confirmed": 1}

    async def test_rejected_order_is_counted(self, db, reconciler, make_booking, seeker, payment_gateway):
        unknown = await make_booking()
        paid = await make_booking()
        _, rejected = await reconciler.initiate_payment(db, unknown.id, "cashfree", seeker)
        _, session = await reconciler.initiate_payment(db, paid.id, "cashfree", seeker)
        payment_gateway.rejected_orders.add(rejected.order_id)
        payment_gateway.mark_paid(session.order_id)

        counts = await reconciler.poll_pending_transactions(db, min_age_minutes=0)

        assert counts == {"rejected": 1, "confirmed": 1}
        assert (await reload(db, Booking, paid.id)).status == "confirmed"
        assert (await reload(db, Booking, unknown.id)).status == "payment_pending"
