"""Payment transaction state machine."""

from consultpay.core.exceptions import PreconditionFailed

TRANSACTION_TRANSITIONS = {
    "pending": {"completed", "failed"},
    "completed": {"refunded"},
    "failed": set(),
    "refunded": set(),
}


def assert_transaction_transition(current: str, target: str) -> None:
    allowed = TRANSACTION_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise PreconditionFailed(
            f"Invalid transaction transition: {current} → {target}"
        )
