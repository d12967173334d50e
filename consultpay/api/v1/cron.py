"""Scheduler-triggered jobs, authenticated with the shared cron secret.

The same jobs run from Celery beat; these endpoints let an external
scheduler or an operator trigger them on demand.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from consultpay.api.deps import (
    DbSession,
    get_earnings_service,
    get_payment_reconciler,
    get_payout_service,
    verify_cron_secret,
)
from consultpay.services.dispute_sweeper import dispute_sweeper
from consultpay.services.earnings_service import EarningsService
from consultpay.services.payment_reconciler import PaymentReconciler
from consultpay.services.payout_service import PayoutService
from consultpay.services.reminder_service import reminder_service

router = APIRouter(dependencies=[Depends(verify_cron_secret)])


@router.post("/dispute-sweep")
async def run_dispute_sweep(db: DbSession) -> dict:
    """Approve earnings whose dispute window has closed."""
    result = await dispute_sweeper.sweep(db)
    return {"status": "ok", **result.to_dict()}


@router.get("/dispute-sweep")
async def get_dispute_sweep_stats(db: DbSession) -> dict:
    """Dry run: what the next sweep would approve."""
    return await dispute_sweeper.get_sweep_stats(db)


@router.post("/reminders")
async def run_reminders(db: DbSession) -> dict:
    sent = await reminder_service.send_reminders(db)
    return {"status": "ok", "sent": sent}


@router.post("/expire-bookings")
async def run_expire_bookings(
    db: DbSession, reconciler: Annotated[PaymentReconciler, Depends(get_payment_reconciler)]
) -> dict:
    expired = await reconciler.purge_expired_bookings(db)
    return {"status": "ok", "expired": expired}


@router.post("/auto-complete")
async def run_auto_complete(db: DbSession, earnings: Annotated[EarningsService, Depends(get_earnings_service)]) -> dict:
    completed = await earnings.auto_complete_sessions(db)
    return {"status": "ok", "completed": completed}


@router.post("/poll-payments")
async def run_poll_payments(
    db: DbSession, reconciler: Annotated[PaymentReconciler, Depends(get_payment_reconciler)]
) -> dict:
    outcomes = await reconciler.poll_pending_transactions(db)
    return {"status": "ok", "outcomes": outcomes}


@router.post("/poll-payouts")
async def run_poll_payouts(db: DbSession, payouts: Annotated[PayoutService, Depends(get_payout_service)]) -> dict:
    counts = await payouts.poll_processing_payouts(db)
    return {"status": "ok", "payouts": counts}
