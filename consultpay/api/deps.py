"""API dependencies for authentication and common operations."""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.config import settings
from consultpay.core.exceptions import AuthenticationError, AuthorizationError
from consultpay.core.security import verify_shared_secret, verify_token
from consultpay.database import get_db
from consultpay.models.user import Provider, User
from consultpay.services.bank_account_service import BankAccountService, bank_account_service
from consultpay.services.cancellation_service import CancellationService, cancellation_service
from consultpay.services.dispute_service import DisputeService, dispute_service
from consultpay.services.earnings_service import EarningsService, earnings_service
from consultpay.services.payment_reconciler import PaymentReconciler, payment_reconciler
from consultpay.services.payout_service import PayoutService, payout_service

# Security scheme
security = HTTPBearer()

DbSession = Annotated[AsyncSession, Depends(get_db)]


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: DbSession,
) -> User:
    """Get the current authenticated user from JWT token."""
    try:
        payload = verify_token(credentials.credentials, token_type="access")
        user_id = UUID(payload["sub"])
    except (KeyError, ValueError) as e:
        raise AuthenticationError(f"Invalid token: {e}")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise AuthenticationError("User not found")
    if not user.is_active:
        raise AuthenticationError("User account is deactivated")

    return user


async def get_current_provider(
    current_user: Annotated[User, Depends(get_current_user)],
    db: DbSession,
) -> Provider:
    """Provider profile of the current user."""
    result = await db.execute(select(Provider).where(Provider.user_id == current_user.id))
    provider = result.scalar_one_or_none()
    if provider is None:
        raise AuthorizationError("Provider access required")
    return provider


async def get_current_staff(
    current_user: Annotated[User, Depends(get_current_user)],
) -> User:
    """Get current user and verify they are staff."""
    if not current_user.is_staff:
        raise AuthorizationError("Staff access required")
    return current_user


async def verify_cron_secret(authorization: Annotated[str | None, Header()] = None) -> None:
    """Cron triggers authenticate with ``Authorization: Bearer <CRON_SECRET>``."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not verify_shared_secret(token, settings.cron_secret):
        raise AuthenticationError("Invalid cron secret")


# Service providers, overridable in tests
def get_payment_reconciler() -> PaymentReconciler:
    return payment_reconciler


def get_earnings_service() -> EarningsService:
    return earnings_service


def get_dispute_service() -> DisputeService:
    return dispute_service


def get_bank_account_service() -> BankAccountService:
    return bank_account_service


def get_payout_service() -> PayoutService:
    return payout_service


def get_cancellation_service() -> CancellationService:
    return cancellation_service


CurrentUser = Annotated[User, Depends(get_current_user)]
CurrentProvider = Annotated[Provider, Depends(get_current_provider)]
CurrentStaff = Annotated[User, Depends(get_current_staff)]
