"""Dispute window sweeper.

Moves pending earnings whose dispute window has closed to ``approved``, or
to ``disputed`` when the booking has an open dispute. Each row is its own
short transaction with a compare-and-set from ``pending``, so overlapping
sweeps (cron plus a manual trigger) never double-process a row.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.database import utcnow
from consultpay.domain.dispute_state import OPEN_DISPUTE_STATUSES
from consultpay.domain.earnings_state import AUTO_APPROVER
from consultpay.models.admin import Dispute
from consultpay.models.earnings import ProviderEarnings
from consultpay.services.audit_service import audit_service
from consultpay.services.ledger_store import compare_and_set, end_transaction

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    processed: int = 0
    approved: int = 0
    disputed: int = 0
    approved_amount: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class DisputeSweeper:
    """Closes dispute windows."""

    async def sweep(self, db: AsyncSession, now: datetime | None = None, batch_size: int = 500) -> SweepResult:
        """Process every pending earning whose deadline has passed."""
        now = now or utcnow()
        result = await db.execute(
            select(ProviderEarnings.id, ProviderEarnings.booking_id, ProviderEarnings.net_amount)
            .where(ProviderEarnings.status == "pending", ProviderEarnings.dispute_deadline < now)
            .order_by(ProviderEarnings.dispute_deadline)
            .limit(batch_size)
        )
        candidates = result.all()
        await end_transaction(db)

        stats = SweepResult()
        for earning_id, booking_id, net_amount in candidates:
            open_dispute = await db.execute(
                select(Dispute.id).where(
                    Dispute.booking_id == booking_id, Dispute.status.in_(OPEN_DISPUTE_STATUSES)
                )
            )
            if open_dispute.scalar_one_or_none() is not None:
                won = await compare_and_set(db, ProviderEarnings, earning_id, "pending", status="disputed")
                target = "disputed"
            else:
                won = await compare_and_set(
                    db, ProviderEarnings, earning_id, "pending",
                    status="approved", approved_at=now, approved_by=AUTO_APPROVER,
                )
                target = "approved"

            if not won:
                # Another sweep or a staff action got there first
                await db.rollback()
                stats.skipped += 1
                continue

            await audit_service.log_transition(
                db, "earnings", earning_id, "pending", target, actor=AUTO_APPROVER
            )
            await end_transaction(db)

            stats.processed += 1
            if target == "approved":
                stats.approved += 1
                stats.approved_amount += net_amount
            else:
                stats.disputed += 1

        if stats.processed:
            logger.info(
                f"Dispute sweep: processed={stats.processed} approved={stats.approved} "
                f"disputed={stats.disputed} amount={stats.approved_amount}"
            )
        return stats

    async def get_sweep_stats(self, db: AsyncSession, now: datetime | None = None) -> dict[str, int]:
        """What the next sweep would pick up."""
        now = now or utcnow()
        result = await db.execute(
            select(func.count(ProviderEarnings.id), func.coalesce(func.sum(ProviderEarnings.net_amount), 0))
            .where(ProviderEarnings.status == "pending", ProviderEarnings.dispute_deadline < now)
        )
        count, amount = result.one()
        return {"eligible": int(count), "eligible_amount": int(amount)}


dispute_sweeper = DisputeSweeper()
