"""Participant cancellation of bookings.

Either participant may cancel a pending or confirmed booking. A paid
booking is refunded on a sliding scale (see ``domain.cancellation_policy``):
the cancellation and the refund amount are committed first, then the
gateway refund is sent, so a failed refund can be retried later without
recomputing anything.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.core.exceptions import (
    AuthorizationError,
    ConcurrencyConflict,
    GatewayError,
    NotFoundError,
    PreconditionFailed,
)
from consultpay.database import utcnow
from consultpay.domain.booking_state import assert_booking_transition
from consultpay.domain.cancellation_policy import CANCELLABLE_STATUSES, calculate_refund_amount
from consultpay.models.booking import Booking
from consultpay.models.payment import Transaction
from consultpay.models.user import Provider, User
from consultpay.services.audit_service import audit_service
from consultpay.services.gateway_service import GatewayService, gateway_service
from consultpay.services.ledger_store import compare_and_set, end_transaction, reload
from consultpay.services.notification_service import NotificationService, notification_service
from consultpay.services.refund_service import RefundService

logger = logging.getLogger(__name__)


@dataclass
class CancellationResult:
    booking: Booking
    refund_amount: int
    # none, refunded, failed, retry_later
    refund_status: str


class CancellationService:
    def __init__(
        self,
        gateways: GatewayService | None = None,
        notifier: NotificationService | None = None,
    ):
        self.gateways = gateways or gateway_service
        self.notifier = notifier or notification_service
        self.refunds = RefundService(self.gateways)

    async def cancel_booking(
        self,
        db: AsyncSession,
        booking_id: UUID,
        user: User,
        reason: str | None = None,
    ) -> CancellationResult:
        """Cancel a booking and refund what the notice period allows.

        A gateway failure does not undo the cancellation; the refund stays
        recorded on the transaction for ``retry_refund``.

        Raises:
            AuthorizationError: User is not a participant
            PreconditionFailed: Booking is not pending or confirmed
            ConcurrencyConflict: The booking changed while cancelling
        """
        booking = await reload(db, Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking", str(booking_id))
        provider = await db.get(Provider, booking.provider_id)
        if user.id not in (booking.seeker_id, provider.user_id):
            raise AuthorizationError("Only session participants can cancel a booking")

        if booking.status == "payment_pending":
            raise PreconditionFailed("A payment is in progress for this booking")
        if booking.status not in CANCELLABLE_STATUSES:
            raise PreconditionFailed(f"Booking is {booking.status} and cannot be cancelled")
        assert_booking_transition(booking.status, "cancelled")

        now = utcnow()
        previous_status = booking.status
        transaction_id = None
        refund_amount = 0
        if previous_status == "confirmed":
            paid = await db.execute(
                select(Transaction.id).where(
                    Transaction.booking_id == booking_id, Transaction.status == "completed"
                )
            )
            transaction_id = paid.scalar_one_or_none()
            if transaction_id is not None:
                refund_amount = calculate_refund_amount(booking.amount, booking.start_time, now)

        if not await compare_and_set(
            db, Booking, booking_id, previous_status,
            status="cancelled", cancelled_at=now, cancelled_by=user.id, cancellation_reason=reason,
        ):
            await db.rollback()
            raise ConcurrencyConflict("Booking changed while cancelling")

        if refund_amount:
            await db.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id, Transaction.status == "completed")
                .values(refund_amount=refund_amount)
            )
        await audit_service.log_transition(
            db, "booking", booking_id, previous_status, "cancelled",
            user_id=user.id, reason=reason, refund_amount=refund_amount,
        )
        await end_transaction(db)
        logger.info(f"Booking {booking_id} cancelled by user {user.id}: refund={refund_amount}")

        refund_status = "none"
        if refund_amount:
            try:
                await self.refunds.refund_transaction(db, transaction_id, f"Booking {booking_id} cancelled")
                refund_status = "refunded"
            except GatewayError as e:
                await db.rollback()
                refund_status = "retry_later" if e.retryable else "failed"

        booking = await reload(db, Booking, booking_id)
        await self._notify(db, booking, refund_amount)
        return CancellationResult(booking=booking, refund_amount=refund_amount, refund_status=refund_status)

    async def retry_refund(self, db: AsyncSession, booking_id: UUID) -> Transaction:
        """Resend the refund of a cancelled booking whose refund did not go through."""
        booking = await reload(db, Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking", str(booking_id))
        if booking.status != "cancelled":
            raise PreconditionFailed("Only cancelled bookings can have their refund retried")
        result = await db.execute(
            select(Transaction.id).where(
                Transaction.booking_id == booking_id,
                Transaction.status.in_(("completed", "refunded")),
                Transaction.refund_amount.is_not(None),
            )
        )
        transaction_id = result.scalar_one_or_none()
        if transaction_id is None:
            raise PreconditionFailed("No outstanding refund for this booking")
        return await self.refunds.refund_transaction(db, transaction_id, f"Booking {booking_id} cancelled")

    async def _notify(self, db: AsyncSession, booking: Booking, refund_amount: int) -> None:
        provider = await db.get(Provider, booking.provider_id)
        users = [await db.get(User, booking.seeker_id)]
        if provider is not None:
            users.append(await db.get(User, provider.user_id))
        await self.notifier.notify_booking_cancelled(booking, [u for u in users if u is not None], refund_amount)


cancellation_service = CancellationService()
