"""Payment reconciler.

Webhooks, browser redirect returns and polling all land in ``reconcile``.
Whatever the channel, the ledger only moves on the gateway's authoritative
status, fetched outside any open transaction, and every write is guarded so
duplicated or out-of-order deliveries converge on the same end state.
"""

import logging
import secrets
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.config import settings
from consultpay.core.exceptions import (
    AuthorizationError,
    GatewayError,
    GatewayRejected,
    GatewayUnavailable,
    NotFoundError,
    PreconditionFailed,
)
from consultpay.database import utcnow
from consultpay.domain.booking_state import assert_booking_transition
from consultpay.domain.payment_state import assert_transaction_transition
from consultpay.gateways.base import CheckoutSession, CustomerDetails, GatewayStatus, NormalizedStatus
from consultpay.models.booking import Booking
from consultpay.models.payment import ExpiredOrder, Transaction
from consultpay.models.user import Provider, User
from consultpay.services.audit_service import audit_service
from consultpay.services.gateway_service import GatewayService, gateway_service
from consultpay.services.ledger_store import compare_and_set, end_transaction, reload
from consultpay.services.meeting_service import MeetingService, meeting_service
from consultpay.services.notification_service import NotificationService, notification_service
from consultpay.services.settlement_service import settlement_service

logger = logging.getLogger(__name__)

UNPAID_BOOKING_STATUSES = ("pending", "payment_pending")


class ReconcileOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    PENDING = "pending"
    FAILED = "failed"
    EXPIRED = "expired"
    LATE_PAYMENT_REFUNDED = "late_payment_refunded"
    LATE_PAYMENT_REVIEW = "late_payment_review"
    REFUND_FAILED = "refund_failed"
    UNKNOWN_ORDER = "unknown_order"
    RETRY_LATER = "retry_later"
    REJECTED = "rejected"


def payment_deadline(booking: Booking) -> datetime:
    return booking.start_time - timedelta(minutes=settings.payment_lead_time_minutes)


def is_payment_window_closed(booking: Booking, now: datetime) -> bool:
    return now >= payment_deadline(booking)


def generate_reference() -> str:
    return f"TXN-{secrets.token_hex(8).upper()}"


class PaymentReconciler:
    """Drives bookings from payment_pending to confirmed, failed or expired."""

    def __init__(
        self,
        gateways: GatewayService | None = None,
        notifier: NotificationService | None = None,
        meetings: MeetingService | None = None,
    ):
        self.gateways = gateways or gateway_service
        self.notifier = notifier or notification_service
        self.meetings = meetings or meeting_service

    # ==================== INITIATION ====================

    async def initiate_payment(
        self,
        db: AsyncSession,
        booking_id: UUID,
        gateway_name: str,
        seeker: User,
    ) -> tuple[Transaction, CheckoutSession]:
        """Open a checkout session for a booking.

        Intent (booking payment_pending + pending Transaction) is committed
        before the gateway is called; the gateway order id is stored in a
        second transaction.

        Raises:
            PreconditionFailed: Booking is not payable or the payment window closed
            GatewayError: Gateway could not create the order
        """
        gateway = self.gateways.get(gateway_name)

        booking = await reload(db, Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking", str(booking_id))
        if booking.seeker_id != seeker.id:
            raise AuthorizationError("Only the seeker can pay for this booking")
        if booking.status not in UNPAID_BOOKING_STATUSES:
            raise PreconditionFailed(f"Booking is {booking.status} and cannot be paid for")
        if is_payment_window_closed(booking, utcnow()):
            raise PreconditionFailed(
                f"Payment must be completed {settings.payment_lead_time_minutes} minutes before the session"
            )

        moved_to_payment_pending = False
        if booking.status == "pending":
            assert_booking_transition(booking.status, "payment_pending")
            moved_to_payment_pending = await compare_and_set(
                db, Booking, booking.id, "pending", status="payment_pending"
            )
            if not moved_to_payment_pending:
                await db.rollback()
                booking = await reload(db, Booking, booking_id)
                if booking is None or booking.status != "payment_pending":
                    raise PreconditionFailed("Booking changed while starting payment")

        transaction = Transaction(
            booking_id=booking.id,
            reference=generate_reference(),
            gateway=gateway.gateway_type.value,
            amount=booking.amount,
            currency=booking.currency,
            status="pending",
        )
        db.add(transaction)
        if moved_to_payment_pending:
            await audit_service.log_transition(
                db, "booking", booking.id, "pending", "payment_pending", user_id=seeker.id,
                gateway=transaction.gateway,
            )
        await end_transaction(db)

        customer = CustomerDetails(
            customer_id=str(seeker.id),
            name=seeker.full_name or seeker.email,
            email=seeker.email,
            phone=seeker.phone,
        )
        try:
            session = await gateway.create_session(booking.id, booking.amount, booking.currency, customer)
        except GatewayError as e:
            logger.warning(f"Checkout creation failed for booking {booking.id}: {e.detail}")
            await compare_and_set(
                db, Transaction, transaction.id, "pending",
                status="failed", gateway_status="SESSION_NOT_CREATED",
            )
            await end_transaction(db)
            raise

        await db.execute(
            update(Transaction)
            .where(Transaction.id == transaction.id)
            .values(gateway_order_id=session.order_id, gateway_response=session.raw or None)
        )
        await end_transaction(db)
        transaction.gateway_order_id = session.order_id

        logger.info(
            f"Payment initiated: booking={booking.id} gateway={transaction.gateway} "
            f"order_id={session.order_id}"
        )
        return transaction, session

    # ==================== RECONCILIATION ====================

    async def find_transaction(
        self, db: AsyncSession, order_id: str, gateway_name: str | None = None
    ) -> Transaction | None:
        query = select(Transaction).where(Transaction.gateway_order_id == order_id)
        if gateway_name:
            query = query.where(Transaction.gateway == gateway_name)
        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalars().first()

    async def _find_tombstone(self, db: AsyncSession, gateway_name: str, order_id: str) -> ExpiredOrder | None:
        result = await db.execute(
            select(ExpiredOrder)
            .where(ExpiredOrder.gateway == gateway_name, ExpiredOrder.gateway_order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def reconcile(
        self,
        db: AsyncSession,
        gateway_name: str,
        order_id: str,
        source: str,
    ) -> ReconcileOutcome:
        """Bring the ledger in line with the gateway for one order.

        Args:
            db: Database session
            gateway_name: Gateway that owns the order
            order_id: Gateway order id
            source: Channel that triggered this (webhook, redirect, poll)
        """
        transaction = await self.find_transaction(db, order_id, gateway_name)
        if transaction is None:
            tombstone = await self._find_tombstone(db, gateway_name, order_id)
            if tombstone is not None:
                return await self._handle_late_payment(db, tombstone.id, None, source)
            logger.warning(f"Reconcile ({source}): unknown order {gateway_name}/{order_id}")
            return ReconcileOutcome.UNKNOWN_ORDER

        if transaction.status == "completed":
            return ReconcileOutcome.ALREADY_CONFIRMED
        if transaction.status in ("failed", "refunded"):
            return ReconcileOutcome.FAILED

        booking = await reload(db, Booking, transaction.booking_id)
        window_closed = booking is None or is_payment_window_closed(booking, utcnow())
        transaction_id = transaction.id
        await end_transaction(db)

        gateway = self.gateways.get(gateway_name)
        try:
            status = await gateway.verify_status(order_id)
            # An approved-but-uncaptured order past the deadline is left to lapse
            if status.requires_capture and not window_closed:
                status = await gateway.capture(order_id)
        except GatewayUnavailable as e:
            logger.warning(f"Reconcile ({source}) deferred for {gateway_name}/{order_id}: {e.reason}")
            return ReconcileOutcome.RETRY_LATER
        except GatewayRejected as e:
            logger.error(f"Reconcile ({source}) rejected by {gateway_name} for {order_id}: {e.reason}")
            if window_closed:
                return await self._expire_unconfirmed(db, transaction_id)
            return ReconcileOutcome.REJECTED

        return await self._apply_status(db, gateway_name, transaction_id, status, source)

    async def _expire_unconfirmed(self, db: AsyncSession, transaction_id: UUID) -> ReconcileOutcome:
        """The gateway cannot vouch for the order and the deadline passed: it counts as unpaid.

        The order keeps a tombstone, so a payment that does surface later is
        still refunded.
        """
        transaction = await reload(db, Transaction, transaction_id)
        if transaction is None:
            return ReconcileOutcome.EXPIRED
        if transaction.status != "pending":
            return ReconcileOutcome.REJECTED
        booking = await reload(db, Booking, transaction.booking_id)
        if booking is None or booking.status not in UNPAID_BOOKING_STATUSES:
            return ReconcileOutcome.REJECTED
        await self.expire_booking(db, booking, utcnow())
        await end_transaction(db)
        return ReconcileOutcome.EXPIRED

    async def _apply_status(
        self,
        db: AsyncSession,
        gateway_name: str,
        transaction_id: UUID,
        status: GatewayStatus,
        source: str,
    ) -> ReconcileOutcome:
        """Apply a gateway status to the ledger in one transaction."""
        now = utcnow()
        transaction = await reload(db, Transaction, transaction_id)
        if transaction is None:
            # Purged while we were talking to the gateway
            tombstone = await self._find_tombstone(db, gateway_name, status.order_id)
            if tombstone is None:
                return ReconcileOutcome.UNKNOWN_ORDER
            return await self._handle_late_payment(db, tombstone.id, status, source)
        if transaction.status == "completed":
            return ReconcileOutcome.ALREADY_CONFIRMED
        if transaction.status != "pending":
            return ReconcileOutcome.FAILED

        if status.requires_capture:
            # Approved but deliberately not captured: the payment window closed
            booking = await reload(db, Booking, transaction.booking_id)
            if booking is None or booking.status not in UNPAID_BOOKING_STATUSES:
                return ReconcileOutcome.PENDING
            if not is_payment_window_closed(booking, now):
                return ReconcileOutcome.PENDING
            await self.expire_booking(db, booking, now)
            await end_transaction(db)
            return ReconcileOutcome.EXPIRED

        if status.status == NormalizedStatus.PENDING:
            if status.gateway_status != transaction.gateway_status:
                await db.execute(
                    update(Transaction)
                    .where(Transaction.id == transaction.id)
                    .values(gateway_status=status.gateway_status)
                )
                await end_transaction(db)
            return ReconcileOutcome.PENDING

        booking = await reload(db, Booking, transaction.booking_id)

        if status.status in (NormalizedStatus.FAILED, NormalizedStatus.CANCELLED):
            return await self._fail_payment(db, transaction, booking, status, source)

        if status.amount is not None and status.amount != transaction.amount:
            logger.error(
                f"Amount mismatch on {transaction.gateway}/{status.order_id}: "
                f"gateway={status.amount} ledger={transaction.amount}"
            )

        if booking.status in UNPAID_BOOKING_STATUSES and is_payment_window_closed(booking, now):
            tombstone_id = await self.expire_booking(db, booking, now, paid_order=status)
            await end_transaction(db)
            return await self._handle_late_payment(db, tombstone_id, status, source)

        if booking.status != "payment_pending":
            # Paid for a booking that was already confirmed by another order or cancelled
            tombstone_id = await self._tombstone_paid_transaction(db, transaction, booking, status)
            await end_transaction(db)
            return await self._handle_late_payment(db, tombstone_id, status, source)

        return await self._confirm_payment(db, transaction, booking, status, source, now)

    async def _confirm_payment(
        self,
        db: AsyncSession,
        transaction: Transaction,
        booking: Booking,
        status: GatewayStatus,
        source: str,
        now: datetime,
    ) -> ReconcileOutcome:
        assert_booking_transition(booking.status, "confirmed")
        assert_transaction_transition(transaction.status, "completed")
        booking_id, transaction_id, provider_id = booking.id, transaction.id, booking.provider_id
        meeting_url = self.meetings.create_meeting(booking)
        try:
            if not await compare_and_set(
                db, Booking, booking_id, "payment_pending",
                status="confirmed", confirmed_at=now, meeting_url=meeting_url,
            ):
                await db.rollback()
                return ReconcileOutcome.ALREADY_CONFIRMED

            if not await compare_and_set(
                db, Transaction, transaction_id, "pending",
                status="completed",
                capture_id=status.capture_id,
                gateway_status=status.gateway_status,
                gateway_response=status.raw or None,
                completed_at=now,
            ):
                await db.rollback()
                return ReconcileOutcome.ALREADY_CONFIRMED

            await db.execute(
                update(Provider)
                .where(Provider.id == provider_id)
                .values(total_sessions=Provider.total_sessions + 1)
            )

            transaction = await reload(db, Transaction, transaction_id)
            booking = await reload(db, Booking, booking_id)
            await settlement_service.record_payment_received(db, transaction, booking)
            await audit_service.log_transition(
                db, "booking", booking_id, "payment_pending", "confirmed",
                source=source, transaction_id=transaction_id,
            )
            await db.commit()
        except IntegrityError:
            # Another order of the same booking completed first
            await db.rollback()
            logger.info(f"Booking {booking_id} confirmed concurrently by another order")
            return ReconcileOutcome.ALREADY_CONFIRMED

        logger.info(
            f"Payment confirmed ({source}): booking={booking.id} "
            f"order={transaction.gateway}/{transaction.gateway_order_id} amount={transaction.amount}"
        )
        await self._notify_confirmed(db, booking)
        return ReconcileOutcome.CONFIRMED

    async def _fail_payment(
        self,
        db: AsyncSession,
        transaction: Transaction,
        booking: Booking,
        status: GatewayStatus,
        source: str,
    ) -> ReconcileOutcome:
        assert_transaction_transition(transaction.status, "failed")
        if not await compare_and_set(
            db, Transaction, transaction.id, "pending",
            status="failed", gateway_status=status.gateway_status, gateway_response=status.raw or None,
        ):
            await db.rollback()
            return ReconcileOutcome.FAILED

        if await compare_and_set(
            db, Booking, booking.id, "payment_pending", status="cancelled", cancelled_at=utcnow()
        ):
            await audit_service.log_transition(
                db, "booking", booking.id, "payment_pending", "cancelled",
                source=source, gateway_status=status.gateway_status,
            )
        await end_transaction(db)
        logger.info(
            f"Payment {status.status.value} ({source}): booking={booking.id} "
            f"order={transaction.gateway}/{transaction.gateway_order_id}"
        )
        return ReconcileOutcome.FAILED

    async def _notify_confirmed(self, db: AsyncSession, booking: Booking) -> None:
        seeker = await db.get(User, booking.seeker_id)
        provider = await db.get(Provider, booking.provider_id)
        provider_user = await db.get(User, provider.user_id) if provider else None
        if seeker is None or provider_user is None:
            return
        await self.notifier.notify_booking_confirmed(booking, seeker, provider_user)

    # ==================== EXPIRY ====================

    async def expire_booking(
        self,
        db: AsyncSession,
        booking: Booking,
        now: datetime,
        paid_order: GatewayStatus | None = None,
    ) -> UUID | None:
        """Delete an unpaid booking past its payment deadline.

        Every gateway order it had leaves an ExpiredOrder tombstone so a late
        success can still be matched. Returns the tombstone id of
        ``paid_order`` when given. Caller commits.
        """
        booking_id, previous_status = booking.id, booking.status
        result = await db.execute(select(Transaction).where(Transaction.booking_id == booking_id))
        transactions = list(result.scalars().all())
        orders = [t.gateway_order_id for t in transactions if t.gateway_order_id]

        paid_tombstone_id = None
        for transaction in transactions:
            if not transaction.gateway_order_id:
                continue
            tombstone = ExpiredOrder(
                gateway=transaction.gateway,
                gateway_order_id=transaction.gateway_order_id,
                booking_id=booking_id,
                seeker_id=booking.seeker_id,
                provider_id=booking.provider_id,
                amount=transaction.amount,
                currency=transaction.currency,
                expired_at=now,
            )
            if paid_order is not None and transaction.gateway_order_id == paid_order.order_id:
                tombstone.capture_id = paid_order.capture_id
            db.add(tombstone)
            await db.flush()
            if paid_order is not None and transaction.gateway_order_id == paid_order.order_id:
                paid_tombstone_id = tombstone.id

        await db.execute(delete(Transaction).where(Transaction.booking_id == booking_id))
        await db.execute(delete(Booking).where(Booking.id == booking_id))
        await audit_service.log_action(
            db,
            action="booking_expired",
            resource_type="booking",
            resource_id=booking_id,
            old_values={"status": previous_status},
            new_values={"orders": orders},
        )
        logger.info(f"Expired unpaid booking {booking_id} ({len(orders)} orders tombstoned)")
        return paid_tombstone_id

    async def _tombstone_paid_transaction(
        self,
        db: AsyncSession,
        transaction: Transaction,
        booking: Booking,
        status: GatewayStatus,
    ) -> UUID:
        """Move a surplus paid order out of the live ledger so it can be refunded."""
        tombstone = ExpiredOrder(
            gateway=transaction.gateway,
            gateway_order_id=transaction.gateway_order_id,
            booking_id=booking.id,
            seeker_id=booking.seeker_id,
            provider_id=booking.provider_id,
            amount=transaction.amount,
            currency=transaction.currency,
            capture_id=status.capture_id,
        )
        db.add(tombstone)
        await db.flush()
        await db.execute(delete(Transaction).where(Transaction.id == transaction.id))
        logger.warning(
            f"Surplus payment {transaction.gateway}/{transaction.gateway_order_id} "
            f"for booking {booking.id} in status {booking.status}"
        )
        return tombstone.id

    async def purge_expired_bookings(self, db: AsyncSession, now: datetime | None = None) -> int:
        """Expire unpaid bookings whose payment window has closed.

        Pending orders are reconciled first so a payment that did go through
        is refunded right away instead of waiting for a late webhook.
        """
        now = now or utcnow()
        cutoff = now + timedelta(minutes=settings.payment_lead_time_minutes)
        result = await db.execute(
            select(Booking.id).where(
                Booking.status.in_(UNPAID_BOOKING_STATUSES),
                Booking.start_time <= cutoff,
            )
        )
        booking_ids = list(result.scalars().all())
        await end_transaction(db)

        purged = 0
        for booking_id in booking_ids:
            orders = await db.execute(
                select(Transaction.gateway, Transaction.gateway_order_id).where(
                    Transaction.booking_id == booking_id,
                    Transaction.status == "pending",
                    Transaction.gateway_order_id.is_not(None),
                )
            )
            # A rejected lookup is no proof of payment; only an outage defers expiry
            deferred = expired = False
            for gateway_name, order_id in orders.all():
                outcome = await self.reconcile(db, gateway_name, order_id, source="purge")
                if outcome == ReconcileOutcome.RETRY_LATER:
                    deferred = True
                elif outcome == ReconcileOutcome.EXPIRED:
                    expired = True
            if deferred:
                continue

            booking = await reload(db, Booking, booking_id)
            if booking is None or booking.status not in UNPAID_BOOKING_STATUSES:
                if booking is None and expired:
                    purged += 1
                continue
            await self.expire_booking(db, booking, now)
            await end_transaction(db)
            purged += 1

        if purged:
            logger.info(f"Purged {purged} expired unpaid bookings")
        return purged

    # ==================== LATE PAYMENTS ====================

    async def _handle_late_payment(
        self,
        db: AsyncSession,
        tombstone_id: UUID,
        status: GatewayStatus | None,
        source: str,
    ) -> ReconcileOutcome:
        """Refund (or flag) money that arrived for a booking that no longer exists."""
        tombstone = await reload(db, ExpiredOrder, tombstone_id)
        if tombstone.refund_status != "none":
            return _late_outcome(tombstone.refund_status)

        gateway = self.gateways.get(tombstone.gateway)
        if status is None:
            await end_transaction(db)
            try:
                status = await gateway.verify_status(tombstone.gateway_order_id)
            except GatewayUnavailable as e:
                logger.warning(f"Late payment check deferred for {tombstone.gateway_order_id}: {e.reason}")
                return ReconcileOutcome.RETRY_LATER
            except GatewayRejected as e:
                logger.error(f"Late payment check rejected for {tombstone.gateway_order_id}: {e.reason}")
                return ReconcileOutcome.REJECTED

        if status.status != NormalizedStatus.PAID or status.requires_capture:
            return ReconcileOutcome.EXPIRED

        logger.warning(
            f"Late payment ({source}) for expired booking {tombstone.booking_id}: "
            f"{tombstone.gateway}/{tombstone.gateway_order_id} amount={tombstone.amount}"
        )

        if not settings.auto_refund_late_payments:
            if await compare_and_set(
                db, ExpiredOrder, tombstone.id, "none", status_column="refund_status",
                refund_status="manual_review", capture_id=status.capture_id,
            ):
                await audit_service.log_action(
                    db, "late_payment_manual_review", "expired_order", tombstone.id,
                    new_values={"order_id": tombstone.gateway_order_id, "amount": tombstone.amount},
                )
            await end_transaction(db)
            return ReconcileOutcome.LATE_PAYMENT_REVIEW

        capture_id = status.capture_id or tombstone.capture_id
        won = await compare_and_set(
            db, ExpiredOrder, tombstone.id, "none", status_column="refund_status",
            refund_status="pending", capture_id=capture_id,
        )
        await end_transaction(db)
        if not won:
            tombstone = await reload(db, ExpiredOrder, tombstone_id)
            return _late_outcome(tombstone.refund_status)

        try:
            refund = await gateway.refund(
                tombstone.gateway_order_id,
                capture_id,
                tombstone.amount,
                "Booking expired before payment was received",
            )
        except GatewayUnavailable as e:
            # Refund ids are deterministic per order, so the next attempt is safe
            logger.warning(f"Late payment refund deferred for {tombstone.gateway_order_id}: {e.reason}")
            await compare_and_set(
                db, ExpiredOrder, tombstone.id, "pending", status_column="refund_status", refund_status="none"
            )
            await end_transaction(db)
            return ReconcileOutcome.RETRY_LATER
        except GatewayRejected as e:
            logger.error(f"Late payment refund rejected for {tombstone.gateway_order_id}: {e.reason}")
            await compare_and_set(
                db, ExpiredOrder, tombstone.id, "pending", status_column="refund_status",
                refund_status="failed", refund_error=e.reason,
            )
            await audit_service.log_action(
                db, "late_payment_refund_failed", "expired_order", tombstone.id,
                new_values={"error": e.reason},
            )
            await end_transaction(db)
            return ReconcileOutcome.REFUND_FAILED

        await compare_and_set(
            db, ExpiredOrder, tombstone.id, "pending", status_column="refund_status",
            refund_status="refunded", gateway_refund_id=refund.refund_id, refunded_at=utcnow(),
        )
        tombstone = await reload(db, ExpiredOrder, tombstone_id)
        await settlement_service.record_late_payment_refund(db, tombstone)
        await audit_service.log_action(
            db, "late_payment_refunded", "expired_order", tombstone.id,
            new_values={"refund_id": refund.refund_id, "amount": tombstone.amount},
        )
        await end_transaction(db)
        logger.info(f"Late payment refunded: order={tombstone.gateway_order_id} refund={refund.refund_id}")
        return ReconcileOutcome.LATE_PAYMENT_REFUNDED

    # ==================== POLLING ====================

    async def poll_pending_transactions(
        self, db: AsyncSession, min_age_minutes: int = 2
    ) -> dict[str, int]:
        """Reconcile every pending transaction the gateway has an order for."""
        cutoff = utcnow() - timedelta(minutes=min_age_minutes)
        result = await db.execute(
            select(Transaction.gateway, Transaction.gateway_order_id).where(
                Transaction.status == "pending",
                Transaction.gateway_order_id.is_not(None),
                Transaction.created_at <= cutoff,
            )
        )
        orders = result.all()
        await end_transaction(db)

        counts: dict[str, int] = {}
        for gateway_name, order_id in orders:
            outcome = await self.reconcile(db, gateway_name, order_id, source="poll")
            counts[outcome.value] = counts.get(outcome.value, 0) + 1
        if orders:
            logger.info(f"Polled {len(orders)} pending transactions: {counts}")
        return counts


def _late_outcome(refund_status: str) -> ReconcileOutcome:
    return {
        "refunded": ReconcileOutcome.LATE_PAYMENT_REFUNDED,
        "manual_review": ReconcileOutcome.LATE_PAYMENT_REVIEW,
        "failed": ReconcileOutcome.REFUND_FAILED,
    }.get(refund_status, ReconcileOutcome.RETRY_LATER)


payment_reconciler = PaymentReconciler()
