"""Provider earnings state machine.

States:
- pending: session completed, dispute window open
- disputed: window closed with an open dispute, frozen until resolved
- approved: spendable, may be (partly) allocated to a payout
- paid_out: fully allocated to payouts
- reversed: refunded to the seeker after a dispute
"""

from consultpay.core.exceptions import PreconditionFailed

EARNINGS_TRANSITIONS = {
    "pending": {"approved", "disputed", "reversed"},
    "disputed": {"approved", "reversed"},
    "approved": {"paid_out"},
    "paid_out": {"approved"},  # payout rejected or failed
    "reversed": set(),
}

AUTO_APPROVER = "AUTO"


def assert_earnings_transition(current: str, target: str) -> None:
    allowed = EARNINGS_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise PreconditionFailed(
            f"Invalid earnings transition: {current} → {target}"
        )
