"""Dispute state machine.

States: open → under_review → resolved
"""

from consultpay.core.exceptions import PreconditionFailed

DISPUTE_TRANSITIONS: dict[str, set[str]] = {
    "open": {"under_review", "resolved"},
    "under_review": {"resolved"},
    "resolved": set(),
}

OPEN_DISPUTE_STATUSES = frozenset({"open", "under_review"})

VALID_RESOLUTION_TYPES = {
    "favor_provider",
    "refund_seeker",
}


def assert_dispute_transition(current_status: str, new_status: str) -> None:
    """Validate dispute state transition."""
    allowed = DISPUTE_TRANSITIONS.get(current_status, set())
    if new_status not in allowed:
        raise PreconditionFailed(f"Invalid dispute transition: {current_status} → {new_status}")
