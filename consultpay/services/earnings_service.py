"""Earnings engine.

A completed, paid session produces exactly one ProviderEarnings row. The
booking's compare-and-set to ``completed`` picks the single winner; the
unique booking_id on earnings is the backstop.
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.config import settings
from consultpay.core.exceptions import (
    AuthorizationError,
    ConcurrencyConflict,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from consultpay.database import utcnow
from consultpay.domain.booking_state import assert_booking_transition
from consultpay.domain.earnings_state import assert_earnings_transition
from consultpay.domain.dispute_state import OPEN_DISPUTE_STATUSES
from consultpay.models.admin import Dispute
from consultpay.models.booking import Booking
from consultpay.models.earnings import ProviderEarnings
from consultpay.models.payment import Transaction
from consultpay.models.payout import PayoutEarning
from consultpay.models.user import Provider, User
from consultpay.services.audit_service import audit_service
from consultpay.services.commission_service import CommissionService, commission_service
from consultpay.services.ledger_store import compare_and_set, end_transaction, reload

logger = logging.getLogger(__name__)

COMPLETION_CODE_DIGITS = 6


def hash_completion_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


@dataclass
class ProviderBalance:
    """Net earnings per status, in paise."""

    pending: int = 0
    disputed: int = 0
    approved: int = 0
    paid_out: int = 0
    reversed: int = 0
    allocated: int = 0

    @property
    def available(self) -> int:
        return self.approved - self.allocated


class EarningsService:
    """Service for session completion and earnings."""

    def __init__(self, commissions: CommissionService | None = None):
        self.commissions = commissions or commission_service

    async def issue_completion_code(self, db: AsyncSession, booking_id: UUID, seeker: User) -> str:
        """Generate the one-time code the seeker hands the provider at the end of a session.

        Only the hash is stored; issuing a new code invalidates the previous one.
        """
        booking = await reload(db, Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking", str(booking_id))
        if booking.seeker_id != seeker.id:
            raise AuthorizationError("Only the seeker can request a completion code")
        if booking.status != "confirmed":
            raise PreconditionFailed(f"Booking is {booking.status}, completion codes need a confirmed booking")

        code = f"{secrets.randbelow(10 ** COMPLETION_CODE_DIGITS):0{COMPLETION_CODE_DIGITS}d}"
        booking.completion_code_hash = hash_completion_code(code)
        booking.completion_code_expires_at = utcnow() + timedelta(minutes=settings.completion_code_ttl_minutes)
        await end_transaction(db)
        logger.info(f"Completion code issued for booking {booking.id}")
        return code

    async def complete_session(
        self,
        db: AsyncSession,
        booking_id: UUID,
        code: str | None = None,
        actor: User | None = None,
        automatic: bool = False,
    ) -> ProviderEarnings:
        """Mark a session completed and create its earnings.

        Args:
            db: Database session
            booking_id: Booking to complete
            code: Completion code, required unless automatic
            actor: Provider (or staff) completing the session
            automatic: Completion by the auto-complete job

        Raises:
            PreconditionFailed: Booking not confirmed, unpaid, or already has earnings
            ValidationError: Wrong or expired completion code
            ConcurrencyConflict: Another caller completed the booking first
        """
        now = utcnow()
        booking = await reload(db, Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking", str(booking_id))

        provider = await reload(db, Provider, booking.provider_id)
        if actor is not None and not actor.is_staff and provider.user_id != actor.id:
            raise AuthorizationError("Only the provider can complete this session")

        if booking.status != "confirmed":
            raise PreconditionFailed(f"Booking is {booking.status}, only confirmed bookings can be completed")

        paid = await db.execute(
            select(Transaction.id).where(
                Transaction.booking_id == booking.id, Transaction.status == "completed"
            )
        )
        if paid.scalar_one_or_none() is None:
            raise PreconditionFailed("Booking has no completed payment")

        existing = await db.execute(
            select(ProviderEarnings.id).where(ProviderEarnings.booking_id == booking.id)
        )
        if existing.scalar_one_or_none() is not None:
            raise PreconditionFailed("Earnings already exist for this booking")

        if not automatic:
            self._check_completion_code(booking, code, now)

        assert_booking_transition(booking.status, "completed")
        split = self.commissions.split(booking.amount, self.commissions.resolve_rate(provider.commission_rate))
        booking_id, provider_id = booking.id, provider.id

        try:
            if not await compare_and_set(
                db, Booking, booking_id, "confirmed",
                status="completed", completed_at=now,
                completion_code_hash=None, completion_code_expires_at=None,
            ):
                await db.rollback()
                raise ConcurrencyConflict("Session was completed concurrently")

            earnings = ProviderEarnings(
                booking_id=booking_id,
                provider_id=provider_id,
                gross_amount=split.gross_amount,
                commission_rate=split.commission_rate,
                commission_amount=split.commission_amount,
                net_amount=split.net_amount,
                status="pending",
                dispute_deadline=now + timedelta(hours=settings.dispute_window_hours),
                created_at=now,
            )
            db.add(earnings)
            await db.flush()
            await audit_service.log_transition(
                db, "booking", booking_id, "confirmed", "completed",
                user_id=actor.id if actor else None,
                actor="AUTO" if automatic else None,
            )
            await audit_service.log_transition(
                db, "earnings", earnings.id, None, "pending",
                gross=split.gross_amount, commission=split.commission_amount, net=split.net_amount,
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConcurrencyConflict("Earnings were created concurrently for this booking")

        logger.info(
            f"Session completed: booking={booking_id} gross={split.gross_amount} "
            f"commission={split.commission_amount} net={split.net_amount}"
        )
        return earnings

    @staticmethod
    def _check_completion_code(booking: Booking, code: str | None, now: datetime) -> None:
        if not code:
            raise ValidationError("Completion code is required")
        if not booking.completion_code_hash or not booking.completion_code_expires_at:
            raise ValidationError("No completion code has been issued for this booking")
        if now > booking.completion_code_expires_at:
            raise ValidationError("Completion code has expired")
        if not hmac.compare_digest(booking.completion_code_hash, hash_completion_code(code.strip())):
            raise ValidationError("Invalid completion code")

    async def auto_complete_sessions(self, db: AsyncSession, now: datetime | None = None) -> int:
        """Complete paid sessions that ended more than the grace period ago."""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.session_auto_complete_grace_minutes)
        result = await db.execute(
            select(Booking.id).where(Booking.status == "confirmed", Booking.end_time < cutoff)
        )
        booking_ids = list(result.scalars().all())
        await end_transaction(db)

        completed = 0
        for booking_id in booking_ids:
            try:
                await self.complete_session(db, booking_id, automatic=True)
                completed += 1
            except (PreconditionFailed, ConcurrencyConflict) as e:
                logger.info(f"Auto-complete skipped booking {booking_id}: {e.detail}")
                await db.rollback()

        if completed:
            logger.info(f"Auto-completed {completed} sessions")
        return completed

    async def approve_earning(self, db: AsyncSession, earning_id: UUID, staff: User) -> ProviderEarnings:
        """Release earnings before the dispute window closes."""
        earnings = await reload(db, ProviderEarnings, earning_id)
        if earnings is None:
            raise NotFoundError("Earnings", str(earning_id))
        assert_earnings_transition(earnings.status, "approved")
        if earnings.status != "pending":
            raise PreconditionFailed("Disputed earnings are released by resolving the dispute")

        open_dispute = await db.execute(
            select(Dispute.id).where(
                Dispute.booking_id == earnings.booking_id, Dispute.status.in_(OPEN_DISPUTE_STATUSES)
            )
        )
        if open_dispute.scalar_one_or_none() is not None:
            raise PreconditionFailed("Earnings have an open dispute")

        now = utcnow()
        if not await compare_and_set(
            db, ProviderEarnings, earning_id, "pending",
            status="approved", approved_at=now, approved_by=str(staff.id),
        ):
            await db.rollback()
            raise ConcurrencyConflict("Earnings changed concurrently")

        await audit_service.log_transition(db, "earnings", earning_id, "pending", "approved", user_id=staff.id)
        await end_transaction(db)
        logger.info(f"Earnings {earning_id} approved by staff {staff.id}")
        return await reload(db, ProviderEarnings, earning_id)

    async def get_provider_balance(self, db: AsyncSession, provider_id: UUID) -> ProviderBalance:
        totals = await db.execute(
            select(ProviderEarnings.status, func.coalesce(func.sum(ProviderEarnings.net_amount), 0))
            .where(ProviderEarnings.provider_id == provider_id)
            .group_by(ProviderEarnings.status)
        )
        balance = ProviderBalance()
        for status, amount in totals.all():
            setattr(balance, status, int(amount))

        allocated = await db.execute(
            select(func.coalesce(func.sum(PayoutEarning.amount), 0))
            .join(ProviderEarnings, PayoutEarning.earning_id == ProviderEarnings.id)
            .where(
                and_(
                    ProviderEarnings.provider_id == provider_id,
                    ProviderEarnings.status == "approved",
                    PayoutEarning.released.is_(False),
                )
            )
        )
        balance.allocated = int(allocated.scalar_one())
        return balance

    async def list_provider_earnings(
        self, db: AsyncSession, provider_id: UUID, limit: int = 50
    ) -> list[ProviderEarnings]:
        result = await db.execute(
            select(ProviderEarnings)
            .where(ProviderEarnings.provider_id == provider_id)
            .order_by(ProviderEarnings.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


earnings_service = EarningsService()
