"""Bank account verifier.

A provider registers one payout account at a time. Ownership is proven with
a penny test: a random amount of 1.00 to 9.99 INR is sent to the account and
the provider has a limited number of attempts to report it back.
"""

import logging
import re
import secrets
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.config import settings
from consultpay.core.encryption import decrypt_account_number, encrypt_account_number, mask_account_number
from consultpay.core.exceptions import (
    ConcurrencyConflict,
    GatewayRejected,
    GatewayUnavailable,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from consultpay.database import utcnow
from consultpay.domain.bank_account_state import assert_bank_account_transition
from consultpay.domain.payout_state import IN_FLIGHT_STATUSES
from consultpay.gateways.base import Beneficiary, TransferStatus
from consultpay.models.bank_account import BankAccountDeleteRequest, ProviderBankAccount
from consultpay.models.payout import Payout
from consultpay.models.user import Provider, User
from consultpay.services.audit_service import audit_service
from consultpay.services.gateway_service import GatewayService, gateway_service
from consultpay.services.ledger_store import compare_and_set, end_transaction, get_for_update, reload

logger = logging.getLogger(__name__)

IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{9,18}$")
ACCOUNT_TYPES = ("savings", "current")
PENNY_TOLERANCE = Decimal("0.01")
DEFAULT_DELETION_REASON = "Provider requested removal of this bank account"


@dataclass
class VerificationResult:
    verified: bool
    attempts_remaining: int
    status: str


def validate_bank_details(
    account_holder_name: str,
    account_number: str,
    ifsc_code: str,
    account_type: str,
) -> tuple[str, str, str]:
    """Normalise and validate bank details.

    Returns:
        Cleaned (holder name, account number, IFSC)

    Raises:
        ValidationError: Field-level errors
    """
    errors = []
    name = (account_holder_name or "").strip()
    number = re.sub(r"[\s-]", "", account_number or "")
    ifsc = (ifsc_code or "").strip().upper()

    if not 2 <= len(name) <= 100:
        errors.append({"field": "account_holder_name", "message": "Must be 2-100 characters"})
    if not ACCOUNT_NUMBER_PATTERN.match(number):
        errors.append({"field": "account_number", "message": "Must be 9-18 digits"})
    if not IFSC_PATTERN.match(ifsc):
        errors.append({"field": "ifsc_code", "message": "Invalid IFSC code"})
    if account_type not in ACCOUNT_TYPES:
        errors.append({"field": "account_type", "message": "Must be savings or current"})

    if errors:
        raise ValidationError("Invalid bank account details", errors=errors)
    return name, number, ifsc


def penny_transfer_id(account_id: UUID) -> str:
    return f"penny_{account_id.hex}"


class BankAccountService:
    """Service for provider bank accounts and their verification."""

    def __init__(self, gateways: GatewayService | None = None):
        self.gateways = gateways or gateway_service

    async def get_current_account(self, db: AsyncSession, provider_id: UUID) -> ProviderBankAccount | None:
        """The provider's non-deleted account, if any."""
        result = await db.execute(
            select(ProviderBankAccount)
            .where(ProviderBankAccount.provider_id == provider_id, ProviderBankAccount.status != "deleted")
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add_bank_account(
        self,
        db: AsyncSession,
        provider: Provider,
        account_holder_name: str,
        account_number: str,
        ifsc_code: str,
        bank_name: str,
        branch_name: str | None = None,
        account_type: str = "savings",
    ) -> ProviderBankAccount:
        """Register an account and send its penny test.

        Raises:
            ValidationError: Invalid details
            PreconditionFailed: Provider already has an active or pending account
            GatewayRejected: The bank refused the penny transfer (account is deleted)
        """
        name, number, ifsc = validate_bank_details(account_holder_name, account_number, ifsc_code, account_type)
        if not (bank_name or "").strip():
            raise ValidationError("Bank name is required")

        existing = await self.get_current_account(db, provider.id)
        if existing is not None:
            if existing.status != "rejected":
                raise PreconditionFailed("A bank account is already registered. Request its deletion first.")
            # A rejected account is replaced, never re-verified
            await compare_and_set(
                db, ProviderBankAccount, existing.id, "rejected",
                status="deleted", is_active=False, deleted_at=utcnow(),
            )
            await audit_service.log_transition(db, "bank_account", existing.id, "rejected", "deleted")

        account_id = uuid.uuid4()
        amount = settings.penny_test_min_amount + secrets.randbelow(
            settings.penny_test_max_amount - settings.penny_test_min_amount + 1
        )
        account = ProviderBankAccount(
            id=account_id,
            provider_id=provider.id,
            account_holder_name=name,
            account_number_encrypted=encrypt_account_number(number),
            account_number_masked=mask_account_number(number),
            ifsc_code=ifsc,
            bank_name=bank_name.strip(),
            branch_name=branch_name,
            account_type=account_type,
            status="pending",
            is_active=False,
            penny_test_amount=amount,
            penny_test_transfer_id=penny_transfer_id(account_id),
        )
        try:
            db.add(account)
            await db.flush()
            await audit_service.log_transition(
                db, "bank_account", account_id, None, "pending", user_id=provider.user_id,
                masked=account.account_number_masked,
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise PreconditionFailed("A bank account is already registered")

        logger.info(f"Bank account {account_id} added for provider {provider.id}")
        return await self._send_penny_test(db, account_id)

    async def resend_penny_test(self, db: AsyncSession, provider: Provider) -> ProviderBankAccount:
        """Retry the penny transfer of an account the gateway never acknowledged."""
        account = await self.get_current_account(db, provider.id)
        if account is None:
            raise NotFoundError("Bank account")
        if account.status != "pending":
            raise PreconditionFailed(f"Penny test cannot be resent for an account in status {account.status}")
        return await self._send_penny_test(db, account.id)

    async def _send_penny_test(self, db: AsyncSession, account_id: UUID) -> ProviderBankAccount:
        account = await reload(db, ProviderBankAccount, account_id)
        provider = await db.get(Provider, account.provider_id)
        user = await db.get(User, provider.user_id)
        beneficiary = Beneficiary(
            beneficiary_id=f"prov{provider.id.hex[:20]}",
            name=account.account_holder_name,
            account_number=decrypt_account_number(account.account_number_encrypted),
            ifsc=account.ifsc_code,
            email=user.email,
            phone=user.phone,
        )
        transfer_id, amount = account.penny_test_transfer_id, account.penny_test_amount
        await end_transaction(db)

        transfers = self.gateways.transfers
        try:
            # Status first: a previous attempt may have reached the gateway
            result = await transfers.transfer_status(transfer_id)
            if result is None:
                result = await transfers.transfer(transfer_id, amount, beneficiary, "Account verification")
        except GatewayUnavailable as e:
            logger.warning(f"Penny test for account {account_id} deferred: {e.reason}")
            return account
        except GatewayRejected as e:
            await self._discard_account(db, account_id, e.reason)
            raise

        if result.status == TransferStatus.FAILED:
            reason = result.reason or result.gateway_status or "transfer failed"
            await self._discard_account(db, account_id, reason)
            raise GatewayRejected(transfers.name, reason)

        if await compare_and_set(
            db, ProviderBankAccount, account_id, "pending",
            status="penny_test_sent", penny_test_reference=result.reference, penny_test_sent_at=utcnow(),
        ):
            await audit_service.log_transition(
                db, "bank_account", account_id, "pending", "penny_test_sent", reference=result.reference
            )
        await end_transaction(db)
        logger.info(f"Penny test sent for account {account_id}: transfer={transfer_id}")
        return await reload(db, ProviderBankAccount, account_id)

    async def _discard_account(self, db: AsyncSession, account_id: UUID, reason: str) -> None:
        logger.warning(f"Penny test rejected for account {account_id}: {reason}")
        if await compare_and_set(
            db, ProviderBankAccount, account_id, "pending",
            status="deleted", is_active=False, deleted_at=utcnow(),
        ):
            await audit_service.log_transition(db, "bank_account", account_id, "pending", "deleted", reason=reason)
        await end_transaction(db)

    async def verify_penny_test(
        self, db: AsyncSession, provider: Provider, claimed_amount: Decimal | str | float
    ) -> VerificationResult:
        """Check the amount the provider saw arrive (in rupees).

        Raises:
            PreconditionFailed: No penny test outstanding, or attempts exhausted
        """
        try:
            claimed = Decimal(str(claimed_amount))
        except InvalidOperation:
            raise ValidationError("Amount must be a number")
        if not claimed.is_finite():
            raise ValidationError("Amount must be a number")

        account = await self.get_current_account(db, provider.id)
        if account is None:
            raise NotFoundError("Bank account")
        max_attempts = settings.penny_test_max_attempts
        if account.status == "verified":
            raise PreconditionFailed("Bank account is already verified")
        if account.status == "rejected" or account.verification_attempts >= max_attempts:
            raise PreconditionFailed("Verification attempts exhausted. Add a new bank account.")
        if account.status != "penny_test_sent":
            raise PreconditionFailed("Penny test has not been sent yet")

        account_id = account.id
        expected = Decimal(account.penny_test_amount) / Decimal("100")
        now = utcnow()

        if abs(claimed - expected) < PENNY_TOLERANCE:
            assert_bank_account_transition(account.status, "verified")
            result = await db.execute(
                update(ProviderBankAccount)
                .where(
                    ProviderBankAccount.id == account_id,
                    ProviderBankAccount.status == "penny_test_sent",
                    ProviderBankAccount.verification_attempts < max_attempts,
                )
                .values(status="verified", is_active=True, verified_at=now)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise ConcurrencyConflict("Bank account changed during verification")
            await audit_service.log_transition(
                db, "bank_account", account_id, "penny_test_sent", "verified", user_id=provider.user_id
            )
            await end_transaction(db)
            logger.info(f"Bank account {account_id} verified")
            account = await reload(db, ProviderBankAccount, account_id)
            return VerificationResult(True, max_attempts - account.verification_attempts, "verified")

        # Wrong amount: count the attempt atomically
        result = await db.execute(
            update(ProviderBankAccount)
            .where(
                ProviderBankAccount.id == account_id,
                ProviderBankAccount.status == "penny_test_sent",
                ProviderBankAccount.verification_attempts < max_attempts,
            )
            .values(verification_attempts=ProviderBankAccount.verification_attempts + 1)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise PreconditionFailed("Verification attempts exhausted. Add a new bank account.")

        account = await reload(db, ProviderBankAccount, account_id)
        remaining = max(max_attempts - account.verification_attempts, 0)
        status = account.status
        if remaining == 0:
            await compare_and_set(
                db, ProviderBankAccount, account_id, "penny_test_sent",
                status="rejected", is_active=False, rejected_at=now,
            )
            await audit_service.log_transition(
                db, "bank_account", account_id, "penny_test_sent", "rejected", user_id=provider.user_id
            )
            status = "rejected"
            logger.warning(f"Bank account {account_id} rejected after {max_attempts} failed attempts")
        await end_transaction(db)
        return VerificationResult(False, remaining, status)

    async def request_deletion(
        self, db: AsyncSession, provider: Provider, reason: str | None = None
    ) -> BankAccountDeleteRequest:
        reason = (reason or DEFAULT_DELETION_REASON).strip()
        if not 10 <= len(reason) <= 500:
            raise ValidationError("Reason must be between 10 and 500 characters")

        account = await self.get_current_account(db, provider.id)
        if account is None:
            raise NotFoundError("Bank account")

        pending = await db.execute(
            select(BankAccountDeleteRequest.id).where(
                BankAccountDeleteRequest.bank_account_id == account.id,
                BankAccountDeleteRequest.status == "pending",
            )
        )
        if pending.scalar_one_or_none() is not None:
            raise PreconditionFailed("A deletion request is already pending for this account")

        request = BankAccountDeleteRequest(
            bank_account_id=account.id,
            provider_id=provider.id,
            reason=reason,
            status="pending",
        )
        try:
            db.add(request)
            await db.flush()
            await audit_service.log_action(
                db, "bank_account_delete_requested", "bank_account", account.id,
                new_values={"request_id": str(request.id)}, user_id=provider.user_id,
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise PreconditionFailed("A deletion request is already pending for this account")
        return request

    async def resolve_deletion(
        self,
        db: AsyncSession,
        request_id: UUID,
        staff: User,
        approve: bool,
        note: str | None = None,
    ) -> BankAccountDeleteRequest:
        """Approve or reject a deletion request.

        Raises:
            PreconditionFailed: Request already resolved, or the account funds an in-flight payout
        """
        request = await reload(db, BankAccountDeleteRequest, request_id)
        if request is None:
            raise NotFoundError("Deletion request", str(request_id))
        if request.status != "pending":
            raise PreconditionFailed(f"Deletion request is already {request.status}")
        account_id, provider_id = request.bank_account_id, request.provider_id
        now = utcnow()

        if approve:
            # Serialises with payout requests for the same provider
            await get_for_update(db, Provider, provider_id)
            in_flight = await db.execute(
                select(Payout.id).where(
                    Payout.bank_account_id == account_id, Payout.status.in_(IN_FLIGHT_STATUSES)
                )
            )
            if in_flight.first() is not None:
                await db.rollback()
                raise PreconditionFailed("The account is funding a payout in progress")

        target = "approved" if approve else "rejected"
        if not await compare_and_set(
            db, BankAccountDeleteRequest, request_id, "pending",
            status=target, resolved_by=staff.id, resolution_note=note, resolved_at=now,
        ):
            await db.rollback()
            raise ConcurrencyConflict("Deletion request was resolved concurrently")

        if approve:
            account = await reload(db, ProviderBankAccount, account_id)
            previous = account.status
            if previous != "deleted":
                await compare_and_set(
                    db, ProviderBankAccount, account_id, previous,
                    status="deleted", is_active=False, deleted_at=now,
                )
                await audit_service.log_transition(
                    db, "bank_account", account_id, previous, "deleted", user_id=staff.id
                )

        await audit_service.log_action(
            db, f"bank_account_delete_{target}", "bank_account", account_id,
            new_values={"request_id": str(request_id), "note": note}, user_id=staff.id,
        )
        await end_transaction(db)
        logger.info(f"Bank account deletion request {request_id} {target} by staff {staff.id}")
        return await reload(db, BankAccountDeleteRequest, request_id)

    async def list_pending_delete_requests(self, db: AsyncSession) -> list[BankAccountDeleteRequest]:
        result = await db.execute(
            select(BankAccountDeleteRequest)
            .where(BankAccountDeleteRequest.status == "pending")
            .order_by(BankAccountDeleteRequest.created_at)
        )
        return list(result.scalars().all())


bank_account_service = BankAccountService()
