"""Session reminders: an email a day ahead and an SMS an hour ahead."""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.database import utcnow
from consultpay.models.booking import Booking
from consultpay.models.user import Provider, User
from consultpay.services.ledger_store import end_transaction
from consultpay.services.notification_service import NotificationService, notification_service

logger = logging.getLogger(__name__)

# (flag column, lead time, wording)
REMINDERS = (
    ("reminder_24h_sent_at", timedelta(hours=24), "in 24 hours"),
    ("reminder_1h_sent_at", timedelta(hours=1), "in 1 hour"),
)


class ReminderService:
    def __init__(self, notifier: NotificationService | None = None):
        self.notifier = notifier or notification_service

    async def send_reminders(self, db: AsyncSession, now: datetime | None = None) -> dict[str, int]:
        """Send due reminders for confirmed bookings, each at most once."""
        now = now or utcnow()
        sent = {}
        for flag, lead, wording in REMINDERS:
            sent[flag] = await self._send_due(db, now, flag, lead, wording)
        return sent

    async def _send_due(self, db: AsyncSession, now: datetime, flag: str, lead: timedelta, wording: str) -> int:
        column = getattr(Booking, flag)
        result = await db.execute(
            select(Booking.id).where(
                Booking.status == "confirmed",
                column.is_(None),
                Booking.start_time > now,
                Booking.start_time <= now + lead,
            )
        )
        booking_ids = list(result.scalars().all())

        count = 0
        for booking_id in booking_ids:
            # Claim the reminder first so concurrent runs never double-send
            claimed = await db.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.status == "confirmed", column.is_(None))
                .values({flag: now})
            )
            if claimed.rowcount != 1:
                await db.rollback()
                continue
            await end_transaction(db)
            await self._deliver(db, booking_id, wording)
            count += 1

        if count:
            logger.info(f"Sent {count} reminders ({wording})")
        return count

    async def _deliver(self, db: AsyncSession, booking_id: UUID, wording: str) -> None:
        booking = await db.get(Booking, booking_id)
        provider = await db.get(Provider, booking.provider_id)
        recipients = [await db.get(User, booking.seeker_id)]
        if provider is not None:
            recipients.append(await db.get(User, provider.user_id))
        for user in recipients:
            if user is not None:
                await self.notifier.notify_session_reminder(booking, user, wording)


reminder_service = ReminderService()
