"""Payout state machine.

States:
- requested: earnings allocated, awaiting staff review
- approved: fee locked in, transfer about to be (or being) sent
- processing: gateway accepted the transfer
- completed: gateway confirmed the money arrived
- rejected: staff declined, earnings released
- failed: gateway declined or reported failure
"""

from consultpay.core.exceptions import PreconditionFailed

PAYOUT_TRANSITIONS = {
    "requested": {"approved", "rejected"},
    "approved": {"processing", "completed", "failed"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "rejected": set(),
    "failed": set(),
}

IN_FLIGHT_STATUSES = frozenset({"requested", "approved", "processing"})


def assert_payout_transition(current: str, target: str) -> None:
    """Validate payout state transition.

    Raises:
        PreconditionFailed: If transition is not allowed
    """
    allowed = PAYOUT_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise PreconditionFailed(
            f"Invalid payout transition: {current} → {target}"
        )


def calculate_actual_amount(requested_amount: int, fee: int, max_fee: int) -> int:
    """Amount actually transferred after the staff-set fee.

    Raises:
        PreconditionFailed: If the fee is out of range or leaves nothing to pay
    """
    if fee < 0 or fee > max_fee:
        raise PreconditionFailed(f"Transaction fee must be between 0 and {max_fee}")
    actual = requested_amount - fee
    if actual <= 0:
        raise PreconditionFailed("Transaction fee leaves nothing to transfer")
    return actual
