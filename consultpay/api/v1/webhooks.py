"""Webhook endpoints for payment and transfer gateways.

A verified notification only tells us which order or transfer to look at;
the state change itself comes from the gateway's authoritative status.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from consultpay.api.deps import DbSession, get_payment_reconciler, get_payout_service
from consultpay.gateways.base import GatewayType
from consultpay.schemas.payment import WebhookAck
from consultpay.services.payment_reconciler import PaymentReconciler
from consultpay.services.payout_service import PayoutService

logger = logging.getLogger(__name__)

router = APIRouter()

Reconciler = Annotated[PaymentReconciler, Depends(get_payment_reconciler)]


async def _handle_payment_webhook(
    request: Request, db, reconciler: PaymentReconciler, gateway: GatewayType
) -> WebhookAck:
    payload = await request.body()
    event = await reconciler.gateways.get(gateway).parse_webhook(payload, request.headers)
    if event is None:
        return WebhookAck()

    outcome = await reconciler.reconcile(db, gateway.value, event.reference, source="webhook")
    logger.info(f"Webhook {gateway.value}/{event.event_type} for {event.reference}: {outcome.value}")
    return WebhookAck()


@router.post("/cashfree", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def cashfree_webhook(request: Request, db: DbSession, reconciler: Reconciler) -> WebhookAck:
    return await _handle_payment_webhook(request, db, reconciler, GatewayType.CASHFREE)


@router.post("/paypal", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def paypal_webhook(request: Request, db: DbSession, reconciler: Reconciler) -> WebhookAck:
    return await _handle_payment_webhook(request, db, reconciler, GatewayType.PAYPAL)


@router.post("/stripe", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def stripe_webhook(request: Request, db: DbSession, reconciler: Reconciler) -> WebhookAck:
    return await _handle_payment_webhook(request, db, reconciler, GatewayType.STRIPE)


@router.post("/cashfree-payouts", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def cashfree_payouts_webhook(
    request: Request,
    db: DbSession,
    payouts: Annotated[PayoutService, Depends(get_payout_service)],
) -> WebhookAck:
    payload = await request.body()
    event = await payouts.gateways.transfers.parse_webhook(payload, request.headers)
    if event is None:
        return WebhookAck()

    outcome = await payouts.reconcile_transfer(db, event.reference)
    logger.info(f"Transfer webhook {event.event_type} for {event.reference}: {outcome}")
    return WebhookAck()
