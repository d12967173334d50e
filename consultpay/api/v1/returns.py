"""Browser return URLs for redirect-based checkouts.

The payer lands here after the gateway's hosted page. The order is
reconciled exactly as a webhook would be, then the browser is sent on to
the frontend status page.
"""

import logging
from typing import Annotated
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse

from consultpay.api.deps import DbSession, get_payment_reconciler
from consultpay.api.v1.payments import outcome_message
from consultpay.config import settings
from consultpay.core.exceptions import AppException
from consultpay.gateways.base import GatewayType
from consultpay.services.payment_reconciler import PaymentReconciler

logger = logging.getLogger(__name__)

router = APIRouter()

Reconciler = Annotated[PaymentReconciler, Depends(get_payment_reconciler)]


def status_page(**params: str) -> RedirectResponse:
    url = f"{settings.frontend_url}/payment/status?{urlencode(params)}"
    return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)


async def _reconcile_and_redirect(
    db, reconciler: PaymentReconciler, gateway: GatewayType, order_id: str | None
) -> RedirectResponse:
    if not order_id:
        return status_page(error="Missing order reference")
    try:
        outcome = await reconciler.reconcile(db, gateway.value, order_id, source="redirect")
    except AppException as e:
        logger.warning(f"Return from {gateway.value} for {order_id} failed: {e.detail}")
        return status_page(order_id=order_id, error=str(e.detail))
    return status_page(order_id=order_id, status=outcome.value, message=outcome_message(outcome))


@router.api_route("/cashfree", methods=["GET", "POST"])
async def cashfree_return(
    db: DbSession,
    reconciler: Reconciler,
    order_id: Annotated[str | None, Query()] = None,
) -> RedirectResponse:
    return await _reconcile_and_redirect(db, reconciler, GatewayType.CASHFREE, order_id)


@router.get("/paypal")
async def paypal_return(
    db: DbSession,
    reconciler: Reconciler,
    token: Annotated[str | None, Query()] = None,
) -> RedirectResponse:
    """PayPal passes the order id as ``token``."""
    return await _reconcile_and_redirect(db, reconciler, GatewayType.PAYPAL, token)


@router.get("/paypal/cancel")
async def paypal_cancel(token: Annotated[str | None, Query()] = None) -> RedirectResponse:
    params = {"status": "cancelled", "message": "Payment was cancelled. You can try again."}
    if token:
        params["order_id"] = token
    return status_page(**params)
