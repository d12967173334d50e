"""Booking creation and lookup."""

import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.config import settings
from consultpay.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from consultpay.database import utcnow
from consultpay.models.booking import Booking
from consultpay.models.user import Provider, User
from consultpay.services.audit_service import audit_service

logger = logging.getLogger(__name__)

MAX_SESSION_HOURS = 8


def as_utc(value: datetime) -> datetime:
    """Naive datetimes from clients are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class BookingService:
    """Creates bookings and enforces participant access."""

    async def create_booking(
        self,
        db: AsyncSession,
        seeker: User,
        provider_id: UUID,
        start_time: datetime,
        end_time: datetime,
        amount: int,
        notes: str | None = None,
    ) -> Booking:
        """Create a pending booking.

        The amount is fixed here and never recomputed.

        Raises:
            NotFoundError: Unknown provider
            ValidationError: Invalid time window or amount
        """
        provider = await db.get(Provider, provider_id)
        if provider is None:
            raise NotFoundError("Provider", str(provider_id))
        if provider.user_id == seeker.id:
            raise ValidationError("You cannot book a session with yourself")

        start_time, end_time = as_utc(start_time), as_utc(end_time)
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        if end_time <= start_time:
            raise ValidationError("Session must end after it starts")
        if end_time - start_time > timedelta(hours=MAX_SESSION_HOURS):
            raise ValidationError(f"Sessions are limited to {MAX_SESSION_HOURS} hours")

        earliest = utcnow() + timedelta(minutes=settings.payment_lead_time_minutes)
        if start_time <= earliest:
            raise ValidationError(
                f"Sessions must be booked at least {settings.payment_lead_time_minutes} minutes in advance"
            )

        booking = Booking(
            seeker_id=seeker.id,
            provider_id=provider.id,
            start_time=start_time,
            end_time=end_time,
            amount=amount,
            currency=settings.currency,
            status="pending",
            notes=notes,
        )
        db.add(booking)
        await db.flush()
        await audit_service.log_transition(db, "booking", booking.id, None, "pending", user_id=seeker.id)

        logger.info(f"Booking created: id={booking.id} provider={provider.id} amount={amount}")
        return booking

    async def get_booking(self, db: AsyncSession, booking_id: UUID) -> Booking:
        booking = await db.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking", str(booking_id))
        return booking

    async def get_for_participant(self, db: AsyncSession, booking_id: UUID, user: User) -> Booking:
        """Booking visible to its seeker, its provider, or staff."""
        booking = await self.get_booking(db, booking_id)
        if user.is_staff or booking.seeker_id == user.id:
            return booking
        result = await db.execute(select(Provider.id).where(Provider.user_id == user.id))
        if result.scalar_one_or_none() == booking.provider_id:
            return booking
        raise AuthorizationError("You are not a participant in this booking")


booking_service = BookingService()
