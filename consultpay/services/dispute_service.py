"""Dispute service.

A participant may dispute a completed session while its earnings are still
inside the dispute window. Staff review and resolve: in the provider's
favour (earnings approved) or with a refund to the seeker (earnings
reversed, payment refunded through its gateway).
"""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.core.exceptions import (
    AuthorizationError,
    ConcurrencyConflict,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from consultpay.database import utcnow
from consultpay.domain.booking_state import assert_booking_transition
from consultpay.domain.dispute_state import (
    OPEN_DISPUTE_STATUSES,
    VALID_RESOLUTION_TYPES,
    assert_dispute_transition,
)
from consultpay.models.admin import Dispute
from consultpay.models.booking import Booking
from consultpay.models.earnings import ProviderEarnings
from consultpay.models.payment import Transaction
from consultpay.models.user import Provider, User
from consultpay.services.audit_service import audit_service
from consultpay.services.gateway_service import GatewayService, gateway_service
from consultpay.services.ledger_store import compare_and_set, end_transaction, reload
from consultpay.services.notification_service import NotificationService, notification_service
from consultpay.services.refund_service import RefundService

logger = logging.getLogger(__name__)


class DisputeService:
    """Service for the dispute lifecycle."""

    def __init__(
        self,
        gateways: GatewayService | None = None,
        notifier: NotificationService | None = None,
    ):
        self.gateways = gateways or gateway_service
        self.notifier = notifier or notification_service
        self.refunds = RefundService(self.gateways)

    async def open_dispute(
        self,
        db: AsyncSession,
        booking_id: UUID,
        user: User,
        reason: str,
        description: str | None = None,
    ) -> Dispute:
        """Open a dispute on a completed session.

        Raises:
            AuthorizationError: User is not a participant
            PreconditionFailed: Booking not completed, window closed, or already disputed
        """
        reason = (reason or "").strip()
        if not 3 <= len(reason) <= 200:
            raise ValidationError("Reason must be between 3 and 200 characters")

        booking = await reload(db, Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking", str(booking_id))
        provider = await db.get(Provider, booking.provider_id)
        if user.id not in (booking.seeker_id, provider.user_id):
            raise AuthorizationError("Only session participants can open a dispute")
        assert_booking_transition(booking.status, "disputed")

        result = await db.execute(select(ProviderEarnings).where(ProviderEarnings.booking_id == booking.id))
        earnings = result.scalar_one_or_none()
        if earnings is None or earnings.status != "pending":
            raise PreconditionFailed("Earnings for this session are no longer disputable")
        if utcnow() >= earnings.dispute_deadline:
            raise PreconditionFailed("The dispute window for this session has closed")

        booking_id = booking.id
        try:
            if not await compare_and_set(db, Booking, booking_id, "completed", status="disputed"):
                await db.rollback()
                raise ConcurrencyConflict("Booking changed while opening the dispute")

            dispute = Dispute(
                booking_id=booking_id,
                raised_by=user.id,
                reason=reason,
                description=description,
                status="open",
            )
            db.add(dispute)
            await db.flush()
            await audit_service.log_transition(db, "booking", booking_id, "completed", "disputed", user_id=user.id)
            await audit_service.log_transition(db, "dispute", dispute.id, None, "open", user_id=user.id)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise PreconditionFailed("A dispute already exists for this booking")

        logger.info(f"Dispute opened: booking={booking_id} by user={user.id}")
        await self._notify(db, booking_id, "opened")
        return dispute

    async def start_review(self, db: AsyncSession, dispute_id: UUID, staff: User) -> Dispute:
        """Move dispute to under_review status."""
        dispute = await self._get_dispute(db, dispute_id)
        assert_dispute_transition(dispute.status, "under_review")

        if not await compare_and_set(
            db, Dispute, dispute_id, "open", status="under_review", reviewed_at=utcnow()
        ):
            await db.rollback()
            raise ConcurrencyConflict("Dispute changed concurrently")
        await audit_service.log_transition(db, "dispute", dispute_id, "open", "under_review", user_id=staff.id)
        await end_transaction(db)
        return await self._get_dispute(db, dispute_id)

    async def resolve_dispute(
        self,
        db: AsyncSession,
        dispute_id: UUID,
        staff: User,
        resolution: str,
        note: str | None = None,
    ) -> Dispute:
        """Resolve a dispute.

        Args:
            db: Database session
            dispute_id: Dispute to resolve
            staff: Resolving staff member
            resolution: favor_provider or refund_seeker
            note: Free-form resolution note

        Raises:
            ValidationError: Unknown resolution
            PreconditionFailed: Dispute already resolved or earnings not reversible
        """
        if resolution not in VALID_RESOLUTION_TYPES:
            raise ValidationError(f"Invalid resolution type: {resolution}")

        dispute = await self._get_dispute(db, dispute_id)
        assert_dispute_transition(dispute.status, "resolved")
        previous_status = dispute.status
        booking_id = dispute.booking_id

        result = await db.execute(select(ProviderEarnings).where(ProviderEarnings.booking_id == booking_id))
        earnings = result.scalar_one_or_none()
        if earnings is None or earnings.status not in ("pending", "disputed"):
            raise PreconditionFailed("Earnings for this booking can no longer be adjusted")
        earnings_id, earnings_status = earnings.id, earnings.status

        transaction_id = None
        if resolution == "refund_seeker":
            paid = await db.execute(
                select(Transaction.id).where(
                    Transaction.booking_id == booking_id, Transaction.status == "completed"
                )
            )
            transaction_id = paid.scalar_one_or_none()
            if transaction_id is None:
                raise PreconditionFailed("No completed payment to refund")

        now = utcnow()
        if not await compare_and_set(
            db, Dispute, dispute_id, OPEN_DISPUTE_STATUSES,
            status="resolved", resolution=resolution, resolution_note=note,
            resolved_by=staff.id, resolved_at=now,
        ):
            await db.rollback()
            raise ConcurrencyConflict("Dispute was resolved concurrently")

        if resolution == "favor_provider":
            earnings_target, booking_target = "approved", "completed"
            earnings_values = {"approved_at": now, "approved_by": str(staff.id)}
        else:
            earnings_target, booking_target = "reversed", "cancelled"
            earnings_values = {}

        if not await compare_and_set(
            db, ProviderEarnings, earnings_id, ("pending", "disputed"),
            status=earnings_target, **earnings_values,
        ):
            await db.rollback()
            raise ConcurrencyConflict("Earnings changed while resolving the dispute")

        booking_values = {"cancelled_at": now} if booking_target == "cancelled" else {}
        await compare_and_set(db, Booking, booking_id, "disputed", status=booking_target, **booking_values)

        await audit_service.log_transition(
            db, "dispute", dispute_id, previous_status, "resolved", user_id=staff.id, resolution=resolution
        )
        await audit_service.log_transition(
            db, "earnings", earnings_id, earnings_status, earnings_target, user_id=staff.id
        )
        await audit_service.log_transition(db, "booking", booking_id, "disputed", booking_target, user_id=staff.id)
        await end_transaction(db)
        logger.info(f"Dispute {dispute_id} resolved: {resolution} by staff {staff.id}")

        if transaction_id is not None:
            await self.refund_transaction(db, transaction_id, f"Dispute {dispute_id} resolved in seeker's favour")

        await self._notify(db, booking_id, resolution)
        return await self._get_dispute(db, dispute_id)

    async def retry_refund(self, db: AsyncSession, dispute_id: UUID) -> Transaction:
        """Retry the gateway refund of a refund_seeker resolution whose refund did not go through."""
        dispute = await self._get_dispute(db, dispute_id)
        if dispute.status != "resolved" or dispute.resolution != "refund_seeker":
            raise PreconditionFailed("Only disputes resolved with a refund can be retried")
        paid = await db.execute(
            select(Transaction.id).where(
                Transaction.booking_id == dispute.booking_id, Transaction.status == "completed"
            )
        )
        transaction_id = paid.scalar_one_or_none()
        if transaction_id is None:
            raise PreconditionFailed("Payment already refunded")
        return await self.refund_transaction(db, transaction_id, f"Dispute {dispute_id} refund retry")

    async def refund_transaction(self, db: AsyncSession, transaction_id: UUID, reason: str) -> Transaction:
        return await self.refunds.refund_transaction(db, transaction_id, reason)

    async def list_open_disputes(self, db: AsyncSession) -> list[Dispute]:
        result = await db.execute(
            select(Dispute).where(Dispute.status.in_(OPEN_DISPUTE_STATUSES)).order_by(Dispute.created_at)
        )
        return list(result.scalars().all())

    async def _get_dispute(self, db: AsyncSession, dispute_id: UUID) -> Dispute:
        """Get dispute by ID or raise NotFoundError."""
        dispute = await reload(db, Dispute, dispute_id)
        if not dispute:
            raise NotFoundError("Dispute", str(dispute_id))
        return dispute

    async def _notify(self, db: AsyncSession, booking_id: UUID, event: str) -> None:
        booking = await db.get(Booking, booking_id)
        if booking is None:
            return
        provider = await db.get(Provider, booking.provider_id)
        users = [await db.get(User, booking.seeker_id)]
        if provider is not None:
            users.append(await db.get(User, provider.user_id))
        await self.notifier.notify_dispute_event(booking, [u for u in users if u is not None], event)


dispute_service = DisputeService()
