"""Provider bank account endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from consultpay.api.deps import CurrentProvider, DbSession, get_bank_account_service
from consultpay.core.exceptions import NotFoundError
from consultpay.schemas.bank_account import (
    BankAccountCreate,
    BankAccountResponse,
    DeleteRequestCreate,
    DeleteRequestResponse,
    PennyTestVerify,
    VerificationResponse,
)
from consultpay.services.bank_account_service import BankAccountService

router = APIRouter()

BankAccounts = Annotated[BankAccountService, Depends(get_bank_account_service)]


@router.get("", response_model=BankAccountResponse)
async def get_bank_account(provider: CurrentProvider, db: DbSession, accounts: BankAccounts) -> BankAccountResponse:
    account = await accounts.get_current_account(db, provider.id)
    if account is None:
        raise NotFoundError("Bank account")
    return BankAccountResponse.model_validate(account)


@router.post("", response_model=BankAccountResponse, status_code=status.HTTP_201_CREATED)
async def add_bank_account(
    data: BankAccountCreate, provider: CurrentProvider, db: DbSession, accounts: BankAccounts
) -> BankAccountResponse:
    """Register a payout account; a penny test is sent to it."""
    account = await accounts.add_bank_account(
        db,
        provider,
        account_holder_name=data.account_holder_name,
        account_number=data.account_number,
        ifsc_code=data.ifsc_code,
        bank_name=data.bank_name,
        branch_name=data.branch_name,
        account_type=data.account_type,
    )
    return BankAccountResponse.model_validate(account)


@router.post("/verify", response_model=VerificationResponse)
async def verify_penny_test(
    data: PennyTestVerify, provider: CurrentProvider, db: DbSession, accounts: BankAccounts
) -> VerificationResponse:
    result = await accounts.verify_penny_test(db, provider, data.amount)
    return VerificationResponse(
        verified=result.verified, attempts_remaining=result.attempts_remaining, status=result.status
    )


@router.post("/resend-penny-test", response_model=BankAccountResponse)
async def resend_penny_test(provider: CurrentProvider, db: DbSession, accounts: BankAccounts) -> BankAccountResponse:
    return BankAccountResponse.model_validate(await accounts.resend_penny_test(db, provider))


@router.post("/delete-request", response_model=DeleteRequestResponse, status_code=status.HTTP_201_CREATED)
async def request_deletion(
    data: DeleteRequestCreate, provider: CurrentProvider, db: DbSession, accounts: BankAccounts
) -> DeleteRequestResponse:
    request = await accounts.request_deletion(db, provider, data.reason)
    return DeleteRequestResponse.model_validate(request)
