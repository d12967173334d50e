"""Booking state machine."""

from consultpay.core.exceptions import PreconditionFailed

BOOKING_TRANSITIONS = {
    "pending": {"payment_pending", "cancelled"},
    "payment_pending": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "completed": {"disputed"},
    "disputed": {"completed", "cancelled"},
    "cancelled": set(),
}


def assert_booking_transition(current: str, target: str) -> None:
    allowed = BOOKING_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise PreconditionFailed(
            f"Invalid booking transition: {current} → {target}"
        )
