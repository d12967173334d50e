"""Bank account verification state machine."""

from consultpay.core.exceptions import PreconditionFailed

BANK_ACCOUNT_TRANSITIONS = {
    "pending": {"penny_test_sent", "deleted"},
    "penny_test_sent": {"verified", "rejected", "deleted"},
    "verified": {"deleted"},
    "rejected": {"deleted"},
    "deleted": set(),
}


def assert_bank_account_transition(current: str, target: str) -> None:
    allowed = BANK_ACCOUNT_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise PreconditionFailed(
            f"Invalid bank account transition: {current} → {target}"
        )


def can_receive_funds(status: str, is_active: bool) -> bool:
    return status == "verified" and is_active
