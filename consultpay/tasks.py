"""Celery background tasks.

Each task opens its own session and delegates to the service that owns the
job; the services commit per row, so a retried task never redoes work.
"""

import asyncio
import logging

from celery import shared_task

from consultpay.core.immutability import register_immutability_enforcement
from consultpay.database import get_db_context
from consultpay.services.dispute_sweeper import dispute_sweeper
from consultpay.services.earnings_service import earnings_service
from consultpay.services.payment_reconciler import payment_reconciler
from consultpay.services.payout_service import payout_service
from consultpay.services.reminder_service import reminder_service

logger = logging.getLogger(__name__)

_loop: asyncio.AbstractEventLoop | None = None


def run_async(coro):
    """Run async function in sync context.

    One loop per worker process, so pooled database connections stay usable
    between tasks.
    """
    global _loop
    register_immutability_enforcement()
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop.run_until_complete(coro)


# ==================== EARNINGS ====================


@shared_task(bind=True, max_retries=3)
def sweep_dispute_windows(self):
    """Approve pending earnings whose dispute window has closed."""
    try:
        return run_async(_sweep_dispute_windows())
    except Exception as exc:
        logger.error(f"Dispute sweep failed: {exc}")
        raise self.retry(exc=exc, countdown=120)


async def _sweep_dispute_windows() -> dict:
    async with get_db_context() as db:
        result = await dispute_sweeper.sweep(db)
    return result.to_dict()


@shared_task(bind=True, max_retries=3)
def auto_complete_sessions(self):
    """Complete confirmed sessions past their grace period."""
    try:
        return {"completed": run_async(_auto_complete_sessions())}
    except Exception as exc:
        logger.error(f"Auto-completion failed: {exc}")
        raise self.retry(exc=exc, countdown=120)


async def _auto_complete_sessions() -> int:
    async with get_db_context() as db:
        return await earnings_service.auto_complete_sessions(db)


# ==================== PAYMENTS ====================


@shared_task(bind=True, max_retries=3)
def expire_unpaid_bookings(self):
    """Expire bookings whose payment window closed without a payment."""
    try:
        return {"expired": run_async(_expire_unpaid_bookings())}
    except Exception as exc:
        logger.error(f"Booking expiry failed: {exc}")
        raise self.retry(exc=exc, countdown=60)


async def _expire_unpaid_bookings() -> int:
    async with get_db_context() as db:
        return await payment_reconciler.purge_expired_bookings(db)


@shared_task(bind=True, max_retries=3)
def poll_pending_payments(self):
    """Reconcile pending transactions whose webhook never arrived."""
    try:
        return run_async(_poll_pending_payments())
    except Exception as exc:
        logger.error(f"Payment polling failed: {exc}")
        raise self.retry(exc=exc, countdown=60)


async def _poll_pending_payments() -> dict:
    async with get_db_context() as db:
        return await payment_reconciler.poll_pending_transactions(db)


# ==================== PAYOUTS ====================


@shared_task(bind=True, max_retries=3)
def poll_processing_payouts(self):
    """Reconcile approved and processing payouts with the transfer gateway."""
    try:
        return run_async(_poll_processing_payouts())
    except Exception as exc:
        logger.error(f"Payout polling failed: {exc}")
        raise self.retry(exc=exc, countdown=120)


async def _poll_processing_payouts() -> dict:
    async with get_db_context() as db:
        return await payout_service.poll_processing_payouts(db)


# ==================== NOTIFICATIONS ====================


@shared_task(bind=True, max_retries=3)
def send_session_reminders(self):
    """Send 24h and 1h reminders for upcoming sessions."""
    try:
        return run_async(_send_session_reminders())
    except Exception as exc:
        logger.error(f"Reminder run failed: {exc}")
        raise self.retry(exc=exc, countdown=60)


async def _send_session_reminders() -> dict:
    async with get_db_context() as db:
        return await reminder_service.send_reminders(db)
