"""Payment endpoints: checkout initiation and client-side status polling."""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from consultpay.api.deps import CurrentUser, DbSession, get_payment_reconciler
from consultpay.core.exceptions import AuthorizationError, NotFoundError
from consultpay.models.booking import Booking
from consultpay.schemas.payment import PaymentInitiate, PaymentSessionResponse, PaymentStatusResponse
from consultpay.services.ledger_store import reload
from consultpay.services.payment_reconciler import PaymentReconciler, ReconcileOutcome

router = APIRouter()

Reconciler = Annotated[PaymentReconciler, Depends(get_payment_reconciler)]

OUTCOME_MESSAGES = {
    ReconcileOutcome.CONFIRMED: "Payment received. Your booking is confirmed.",
    ReconcileOutcome.ALREADY_CONFIRMED: "Payment received. Your booking is confirmed.",
    ReconcileOutcome.PENDING: "Payment is still processing. We will confirm your booking shortly.",
    ReconcileOutcome.RETRY_LATER: "We could not reach the payment provider. We will keep checking.",
    ReconcileOutcome.FAILED: "Payment failed. Your booking was not confirmed.",
    ReconcileOutcome.EXPIRED: "The booking expired before payment completed.",
    ReconcileOutcome.LATE_PAYMENT_REFUNDED: "The booking expired before payment arrived. Your payment is being refunded.",
    ReconcileOutcome.LATE_PAYMENT_REVIEW: "The booking expired before payment arrived. Our team will refund you.",
    ReconcileOutcome.REFUND_FAILED: "The booking expired before payment arrived. Our team will refund you.",
    ReconcileOutcome.UNKNOWN_ORDER: "We could not find this payment.",
    ReconcileOutcome.REJECTED: "The payment provider could not confirm this payment. We will keep checking.",
}


def outcome_message(outcome: ReconcileOutcome) -> str:
    return OUTCOME_MESSAGES.get(outcome, outcome.value)


@router.post("/initiate", response_model=PaymentSessionResponse, status_code=status.HTTP_201_CREATED)
async def initiate_payment(
    data: PaymentInitiate,
    current_user: CurrentUser,
    db: DbSession,
    reconciler: Reconciler,
) -> PaymentSessionResponse:
    """Start a checkout for a booking."""
    transaction, session = await reconciler.initiate_payment(db, data.booking_id, data.gateway, current_user)
    return PaymentSessionResponse(
        transaction_id=transaction.id,
        reference=transaction.reference,
        gateway=transaction.gateway,
        order_id=session.order_id,
        pay_url=session.pay_url,
        client_secret=session.client_secret,
        amount=transaction.amount,
        currency=transaction.currency,
    )


@router.get("/{order_id}/status", response_model=PaymentStatusResponse)
async def get_payment_status(
    order_id: str,
    current_user: CurrentUser,
    db: DbSession,
    reconciler: Reconciler,
) -> PaymentStatusResponse:
    """Client polling channel: reconciles the order and reports where it stands."""
    transaction = await reconciler.find_transaction(db, order_id)
    if transaction is None:
        raise NotFoundError("Payment", order_id)
    booking_id, gateway = transaction.booking_id, transaction.gateway
    booking = await db.get(Booking, booking_id)
    if booking.seeker_id != current_user.id and not current_user.is_staff:
        raise AuthorizationError("You cannot view this payment")

    outcome = await reconciler.reconcile(db, gateway, order_id, source="poll")

    transaction = await reconciler.find_transaction(db, order_id)
    booking = await reload(db, Booking, booking_id)
    return PaymentStatusResponse(
        order_id=order_id,
        outcome=outcome.value,
        transaction_status=transaction.status if transaction else None,
        booking_id=booking_id,
        booking_status=booking.status if booking else None,
        message=outcome_message(outcome),
    )
