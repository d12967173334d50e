"""Staff endpoints: payout review, bank account deletions, earnings and commission."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from consultpay.api.deps import (
    CurrentStaff,
    DbSession,
    get_bank_account_service,
    get_cancellation_service,
    get_earnings_service,
    get_payout_service,
)
from consultpay.schemas.bank_account import DeleteRequestResolve, DeleteRequestResponse
from consultpay.schemas.earnings import CommissionUpdate, EarningsResponse
from consultpay.schemas.payout import PayoutApprove, PayoutReject, PayoutResponse
from consultpay.services.bank_account_service import BankAccountService
from consultpay.services.cancellation_service import CancellationService
from consultpay.services.commission_service import commission_service
from consultpay.services.earnings_service import EarningsService
from consultpay.services.payout_service import PayoutService
from consultpay.services.settlement_service import settlement_service

router = APIRouter()

Payouts = Annotated[PayoutService, Depends(get_payout_service)]


# ============ PAYOUTS ============


@router.get("/payouts", response_model=list[PayoutResponse])
async def list_payouts(
    staff: CurrentStaff,
    db: DbSession,
    payouts: Payouts,
    status: str = Query("requested", pattern="^(requested|approved|processing|completed|failed|rejected)$"),
) -> list[PayoutResponse]:
    """Payouts in a given status, oldest first."""
    return [PayoutResponse.model_validate(p) for p in await payouts.list_pending_payouts(db, status)]


@router.post("/payouts/{payout_id}/approve", response_model=PayoutResponse)
async def approve_payout(
    payout_id: UUID, data: PayoutApprove, staff: CurrentStaff, db: DbSession, payouts: Payouts
) -> PayoutResponse:
    payout = await payouts.approve_payout(db, payout_id, staff, transaction_fee=data.transaction_fee)
    return PayoutResponse.model_validate(payout)


@router.post("/payouts/{payout_id}/reject", response_model=PayoutResponse)
async def reject_payout(
    payout_id: UUID, data: PayoutReject, staff: CurrentStaff, db: DbSession, payouts: Payouts
) -> PayoutResponse:
    return PayoutResponse.model_validate(await payouts.reject_payout(db, payout_id, staff, data.reason))


@router.post("/payouts/{payout_id}/refresh", response_model=PayoutResponse)
async def refresh_payout(payout_id: UUID, staff: CurrentStaff, db: DbSession, payouts: Payouts) -> PayoutResponse:
    """Ask the transfer gateway for the latest status of an in-flight payout."""
    return PayoutResponse.model_validate(await payouts.refresh_transfer_status(db, payout_id))


@router.post("/payouts/{payout_id}/release", response_model=PayoutResponse)
async def release_payout(payout_id: UUID, staff: CurrentStaff, db: DbSession, payouts: Payouts) -> PayoutResponse:
    """Return a failed payout's earnings to the provider's balance."""
    return PayoutResponse.model_validate(await payouts.release_failed_payout(db, payout_id, staff))


@router.get("/payouts/{payout_id}/logs")
async def get_payout_logs(payout_id: UUID, staff: CurrentStaff, db: DbSession, payouts: Payouts) -> list[dict]:
    logs = await payouts.get_payout_logs(db, payout_id)
    return [
        {
            "id": str(log.id),
            "action": log.action,
            "details": log.details,
            "performed_by": log.performed_by,
            "created_at": log.created_at.isoformat(),
        }
        for log in logs
    ]


# ============ BANK ACCOUNTS ============


@router.get("/bank-account-requests", response_model=list[DeleteRequestResponse])
async def list_delete_requests(
    staff: CurrentStaff,
    db: DbSession,
    accounts: Annotated[BankAccountService, Depends(get_bank_account_service)],
) -> list[DeleteRequestResponse]:
    return [DeleteRequestResponse.model_validate(r) for r in await accounts.list_pending_delete_requests(db)]


@router.post("/bank-account-requests/{request_id}/resolve", response_model=DeleteRequestResponse)
async def resolve_delete_request(
    request_id: UUID,
    data: DeleteRequestResolve,
    staff: CurrentStaff,
    db: DbSession,
    accounts: Annotated[BankAccountService, Depends(get_bank_account_service)],
) -> DeleteRequestResponse:
    request = await accounts.resolve_deletion(db, request_id, staff, data.approve, data.note)
    return DeleteRequestResponse.model_validate(request)


# ============ REFUNDS ============


@router.post("/bookings/{booking_id}/retry-refund")
async def retry_refund(
    booking_id: UUID,
    staff: CurrentStaff,
    db: DbSession,
    cancellations: Annotated[CancellationService, Depends(get_cancellation_service)],
) -> dict:
    """Resend the refund of a cancellation whose refund did not reach the gateway."""
    transaction = await cancellations.retry_refund(db, booking_id)
    return {
        "transaction_id": str(transaction.id),
        "status": transaction.status,
        "refund_amount": transaction.refund_amount,
        "gateway_refund_id": transaction.gateway_refund_id,
    }


# ============ EARNINGS ============


@router.post("/earnings/{earning_id}/approve", response_model=EarningsResponse)
async def approve_earning(
    earning_id: UUID,
    staff: CurrentStaff,
    db: DbSession,
    earnings: Annotated[EarningsService, Depends(get_earnings_service)],
) -> EarningsResponse:
    """Approve pending earnings before the dispute window closes."""
    return EarningsResponse.model_validate(await earnings.approve_earning(db, earning_id, staff))


@router.put("/providers/{provider_id}/commission")
async def update_commission(provider_id: UUID, data: CommissionUpdate, staff: CurrentStaff, db: DbSession) -> dict:
    provider = await commission_service.set_provider_rate(db, provider_id, data.commission_rate, staff)
    return {
        "provider_id": str(provider.id),
        "commission_rate": str(provider.commission_rate) if provider.commission_rate is not None else None,
        "effective_rate": str(commission_service.resolve_rate(provider.commission_rate)),
    }


@router.get("/ledger/balance")
async def get_ledger_balance(staff: CurrentStaff, db: DbSession) -> dict[str, int]:
    """Settlement ledger totals in paise."""
    return await settlement_service.get_ledger_balance(db)
