"""Tests for booking creation, participant access and session reminders."""

from datetime import timedelta
from uuid import uuid4

import pytest

from consultpay.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from consultpay.database import utcnow
from consultpay.models.booking import Booking
from consultpay.models.user import User
from consultpay.services.booking_service import BookingService, as_utc
from consultpay.services.ledger_store import reload
from consultpay.services.reminder_service import ReminderService


class TestCreateBooking:
    async def test_creates_pending_booking(self, db, seeker, provider):
        start = utcnow() + timedelta(days=1)

        booking = await BookingService().create_booking(
            db, seeker, provider.id, start, start + timedelta(hours=1), amount=150000
        )
        await db.commit()

        booking = await reload(db, Booking, booking.id)
        assert booking.status == "pending"
        assert booking.amount == 150000
        assert booking.currency == "INR"

    async def test_naive_times_are_utc(self, db, seeker, provider):
        start = (utcnow() + timedelta(days=1)).replace(tzinfo=None, microsecond=0)

        booking = await BookingService().create_booking(
            db, seeker, provider.id, start, start + timedelta(hours=1), amount=150000
        )

        assert booking.start_time == as_utc(start)
        assert booking.start_time.utcoffset() == timedelta(0)

    async def test_too_soon(self, db, seeker, provider):
        start = utcnow() + timedelta(minutes=30)
        with pytest.raises(ValidationError):
            await BookingService().create_booking(db, seeker, provider.id, start, start + timedelta(hours=1), 1000)

    async def test_end_before_start(self, db, seeker, provider):
        start = utcnow() + timedelta(days=1)
        with pytest.raises(ValidationError):
            await BookingService().create_booking(db, seeker, provider.id, start, start - timedelta(hours=1), 1000)

    async def test_session_too_long(self, db, seeker, provider):
        start = utcnow() + timedelta(days=1)
        with pytest.raises(ValidationError):
            await BookingService().create_booking(db, seeker, provider.id, start, start + timedelta(hours=9), 1000)

    async def test_non_positive_amount(self, db, seeker, provider):
        start = utcnow() + timedelta(days=1)
        with pytest.raises(ValidationError):
            await BookingService().create_booking(db, seeker, provider.id, start, start + timedelta(hours=1), 0)

    async def test_cannot_book_yourself(self, db, provider_user, provider):
        start = utcnow() + timedelta(days=1)
        with pytest.raises(ValidationError):
            await BookingService().create_booking(
                db, provider_user, provider.id, start, start + timedelta(hours=1), 1000
            )

    async def test_unknown_provider(self, db, seeker):
        start = utcnow() + timedelta(days=1)
        with pytest.raises(NotFoundError):
            await BookingService().create_booking(db, seeker, uuid4(), start, start + timedelta(hours=1), 1000)


class TestParticipantAccess:
    async def test_participants_and_staff(self, db, make_booking, seeker, provider_user, staff):
        booking = await make_booking()
        service = BookingService()
        for user in (seeker, provider_user, staff):
            assert (await service.get_for_participant(db, booking.id, user)).id == booking.id

    async def test_outsider(self, db, make_booking):
        booking = await make_booking()
        outsider = User(email="outsider@example.com", role="seeker")
        db.add(outsider)
        await db.commit()

        with pytest.raises(AuthorizationError):
            await BookingService().get_for_participant(db, booking.id, outsider)


class TestReminders:
    async def test_day_ahead_email_sent_once(self, db, make_booking, notifier):
        await make_booking(status="confirmed", starts_in=timedelta(hours=20))
        service = ReminderService(notifier)

        first = await service.send_reminders(db)
        second = await service.send_reminders(db)

        assert first == {"reminder_24h_sent_at": 1, "reminder_1h_sent_at": 0}
        assert second == {"reminder_24h_sent_at": 0, "reminder_1h_sent_at": 0}
        assert {to for to, _ in notifier.emails} == {"seeker@example.com", "provider@example.com"}

    async def test_hour_ahead_sms(self, db, make_booking, notifier):
        await make_booking(status="confirmed", starts_in=timedelta(minutes=45))

        sent = await ReminderService(notifier).send_reminders(db)

        assert sent["reminder_1h_sent_at"] == 1
        assert {phone for phone, _ in notifier.sms} == {"+919800000001", "+919800000002"}

    async def test_unconfirmed_bookings_skipped(self, db, make_booking, notifier):
        await make_booking(status="payment_pending", starts_in=timedelta(hours=2))
        sent = await ReminderService(notifier).send_reminders(db, now=utcnow())
        assert sent == {"reminder_24h_sent_at": 0, "reminder_1h_sent_at": 0}
        assert notifier.emails == []
