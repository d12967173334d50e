"""Refunds of completed payments.

The refund amount is recorded on the transaction before the gateway is
called (a dispute refunds everything, a cancellation may refund part). The
gateway refund id is derived from the order, so retrying after a timeout
never refunds twice.
"""

import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.core.exceptions import GatewayError, NotFoundError
from consultpay.database import utcnow
from consultpay.domain.payment_state import assert_transaction_transition
from consultpay.models.booking import Booking
from consultpay.models.payment import Transaction
from consultpay.services.audit_service import audit_service
from consultpay.services.gateway_service import GatewayService, gateway_service
from consultpay.services.ledger_store import compare_and_set, end_transaction, reload
from consultpay.services.settlement_service import settlement_service

logger = logging.getLogger(__name__)


class RefundService:
    def __init__(self, gateways: GatewayService | None = None):
        self.gateways = gateways or gateway_service

    async def refund_transaction(self, db: AsyncSession, transaction_id: UUID, reason: str) -> Transaction:
        """Refund a completed payment, outside any open transaction.

        Refunds ``refund_amount`` when one was recorded, the full amount otherwise.

        Raises:
            GatewayError: The refund did not go through; the transaction stays completed
        """
        transaction = await reload(db, Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", str(transaction_id))
        if transaction.status == "refunded":
            return transaction
        assert_transaction_transition(transaction.status, "refunded")

        amount = transaction.refund_amount if transaction.refund_amount is not None else transaction.amount
        gateway = self.gateways.get(transaction.gateway)
        await end_transaction(db)

        try:
            refund = await gateway.refund(transaction.gateway_order_id, transaction.capture_id, amount, reason)
        except GatewayError as e:
            logger.error(f"Refund failed for transaction {transaction_id}: {e.detail}")
            raise

        if not await compare_and_set(
            db, Transaction, transaction_id, "completed",
            status="refunded", refund_amount=amount, gateway_refund_id=refund.refund_id, refunded_at=utcnow(),
        ):
            await db.rollback()
            return await reload(db, Transaction, transaction_id)

        booking = await db.get(Booking, transaction.booking_id)
        await settlement_service.record_refund_issued(
            db,
            source_id=transaction_id,
            amount=amount,
            currency=transaction.currency,
            booking_id=transaction.booking_id,
            seeker_id=booking.seeker_id,
            gateway=transaction.gateway,
            gateway_reference=refund.refund_id,
            description=reason,
        )
        await audit_service.log_transition(
            db, "transaction", transaction_id, "completed", "refunded",
            refund_id=refund.refund_id, amount=amount,
        )
        await end_transaction(db)
        logger.info(f"Refunded transaction {transaction_id}: amount={amount} refund={refund.refund_id}")
        return await reload(db, Transaction, transaction_id)
