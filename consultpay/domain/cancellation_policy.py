"""Cancellation refund policy.

Refund of a paid session cancelled by either participant:
- more than 24 hours before the start: full refund
- more than 2 hours before the start: 50% refund
- otherwise: no refund
"""

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

# (minimum time before start, refund percentage), evaluated in order, first match wins
REFUND_TIERS: list[tuple[timedelta, Decimal]] = [
    (timedelta(hours=24), Decimal("100")),
    (timedelta(hours=2), Decimal("50")),
]

CANCELLABLE_STATUSES = frozenset({"pending", "confirmed"})


def calculate_refund_percentage(start_time: datetime, cancelled_at: datetime) -> Decimal:
    notice = start_time - cancelled_at
    for min_notice, refund_pct in REFUND_TIERS:
        if notice > min_notice:
            return refund_pct
    return Decimal("0")


def calculate_refund_amount(amount: int, start_time: datetime, cancelled_at: datetime) -> int:
    """Refund in paise, rounded half up."""
    refund_pct = calculate_refund_percentage(start_time, cancelled_at)
    refund = (Decimal(amount) * refund_pct / Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(refund)
