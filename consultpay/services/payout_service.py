"""Payout approval and disbursement.

Staff approve (locking in the transfer fee) or reject requested payouts.
Approved payouts are sent through the transfer gateway with a deterministic
transfer id, so a retry after a timeout can never pay twice; the gateway is
always asked about a transfer before it is (re)sent.
"""

import logging
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.config import settings
from consultpay.core.encryption import decrypt_account_number
from consultpay.core.exceptions import (
    ConcurrencyConflict,
    GatewayRejected,
    GatewayUnavailable,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from consultpay.database import utcnow
from consultpay.domain.bank_account_state import can_receive_funds
from consultpay.domain.payout_state import assert_payout_transition, calculate_actual_amount
from consultpay.gateways.base import Beneficiary, TransferResult, TransferStatus
from consultpay.models.bank_account import ProviderBankAccount
from consultpay.models.earnings import ProviderEarnings
from consultpay.models.payout import Payout, PayoutEarning, PayoutLog
from consultpay.models.user import Provider, User
from consultpay.services.gateway_service import GatewayService, gateway_service
from consultpay.services.ledger_store import compare_and_set, end_transaction, reload
from consultpay.services.notification_service import NotificationService, notification_service
from consultpay.services.settlement_service import settlement_service

logger = logging.getLogger(__name__)

SYSTEM = "SYSTEM"


def payout_transfer_id(payout_id: UUID) -> str:
    return f"payout_{payout_id.hex}"


class PayoutService:
    """Service for payout review, disbursement and transfer reconciliation."""

    def __init__(
        self,
        gateways: GatewayService | None = None,
        notifier: NotificationService | None = None,
    ):
        self.gateways = gateways or gateway_service
        self.notifier = notifier or notification_service

    async def get_payout(self, db: AsyncSession, payout_id: UUID) -> Payout:
        payout = await reload(db, Payout, payout_id)
        if payout is None:
            raise NotFoundError("Payout", str(payout_id))
        return payout

    # ==================== REVIEW ====================

    async def reject_payout(self, db: AsyncSession, payout_id: UUID, staff: User, reason: str) -> Payout:
        """Reject a requested payout and give its earnings back.

        Raises:
            ValidationError: No reason given
            PreconditionFailed: Payout is not awaiting review
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")

        payout = await self.get_payout(db, payout_id)
        assert_payout_transition(payout.status, "rejected")

        if not await compare_and_set(
            db, Payout, payout_id, "requested",
            status="rejected", rejection_reason=reason, rejected_at=utcnow(),
        ):
            await db.rollback()
            raise ConcurrencyConflict("Payout was reviewed concurrently")

        self._log(db, payout_id, "rejected", str(staff.id), reason=reason)
        await self._release_lines(db, payout_id, str(staff.id))
        await end_transaction(db)

        logger.info(f"Payout {payout_id} rejected by staff {staff.id}")
        payout = await self.get_payout(db, payout_id)
        await self._notify(db, payout)
        return payout

    async def approve_payout(
        self, db: AsyncSession, payout_id: UUID, staff: User, transaction_fee: int = 0
    ) -> Payout:
        """Approve a requested payout and send it.

        Raises:
            PreconditionFailed: Payout not awaiting review, bad fee, or unusable bank account
        """
        payout = await self.get_payout(db, payout_id)
        assert_payout_transition(payout.status, "approved")
        actual = calculate_actual_amount(
            payout.requested_amount, transaction_fee, settings.payout_max_transaction_fee
        )

        account = await db.get(ProviderBankAccount, payout.bank_account_id)
        if account is None or not can_receive_funds(account.status, account.is_active):
            raise PreconditionFailed("The payout's bank account is no longer verified")

        transfer_id = payout_transfer_id(payout_id)
        if not await compare_and_set(
            db, Payout, payout_id, "requested",
            status="approved",
            transaction_fee=transaction_fee,
            actual_amount=actual,
            transfer_id=transfer_id,
            approved_by=staff.id,
            approved_at=utcnow(),
        ):
            await db.rollback()
            raise ConcurrencyConflict("Payout was reviewed concurrently")

        self._log(
            db, payout_id, "approved", str(staff.id),
            transaction_fee=transaction_fee, actual_amount=actual, transfer_id=transfer_id,
        )
        await end_transaction(db)
        logger.info(f"Payout {payout_id} approved by staff {staff.id}: actual={actual} fee={transaction_fee}")

        return await self.disburse(db, payout_id)

    # ==================== DISBURSEMENT ====================

    async def disburse(self, db: AsyncSession, payout_id: UUID) -> Payout:
        """Send an approved payout, or adopt the gateway's record of it."""
        payout = await self.get_payout(db, payout_id)
        if payout.status != "approved":
            return payout

        account = await db.get(ProviderBankAccount, payout.bank_account_id)
        provider = await db.get(Provider, payout.provider_id)
        user = await db.get(User, provider.user_id)
        beneficiary = Beneficiary(
            beneficiary_id=f"prov{provider.id.hex[:20]}",
            name=account.account_holder_name,
            account_number=decrypt_account_number(account.account_number_encrypted),
            ifsc=account.ifsc_code,
            email=user.email,
            phone=user.phone,
        )
        transfer_id, amount = payout.transfer_id, payout.actual_amount
        await end_transaction(db)

        transfers = self.gateways.transfers
        try:
            result = await transfers.transfer_status(transfer_id)
            if result is None:
                result = await transfers.transfer(transfer_id, amount, beneficiary, f"Payout {transfer_id}")
        except GatewayUnavailable as e:
            logger.warning(f"Disbursement of payout {payout_id} deferred: {e.reason}")
            self._log(db, payout_id, "disbursement_deferred", SYSTEM, reason=e.reason)
            await end_transaction(db)
            return await self.get_payout(db, payout_id)
        except GatewayRejected as e:
            return await self._mark_failed(db, payout_id, e.reason, gateway_status="REJECTED")

        return await self.apply_transfer_status(db, payout_id, result)

    async def apply_transfer_status(self, db: AsyncSession, payout_id: UUID, result: TransferResult) -> Payout:
        """Move a payout forward to match the gateway's view of its transfer."""
        payout = await self.get_payout(db, payout_id)
        now = utcnow()

        if result.status == TransferStatus.PROCESSING:
            if payout.status == "approved":
                if await compare_and_set(
                    db, Payout, payout_id, "approved",
                    status="processing",
                    gateway_transfer_reference=result.reference,
                    gateway_status=result.gateway_status,
                    gateway_response=result.raw or None,
                    processed_at=now,
                ):
                    self._log(db, payout_id, "processing", SYSTEM, reference=result.reference)
            elif payout.status == "processing" and result.gateway_status != payout.gateway_status:
                await db.execute(
                    update(Payout).where(Payout.id == payout_id).values(gateway_status=result.gateway_status)
                )
            await end_transaction(db)
            return await self.get_payout(db, payout_id)

        if result.status == TransferStatus.FAILED:
            return await self._mark_failed(
                db, payout_id, result.reason or "transfer failed", gateway_status=result.gateway_status,
                raw=result.raw,
            )

        if not await compare_and_set(
            db, Payout, payout_id, ("approved", "processing"),
            status="completed",
            gateway_transfer_reference=result.reference or payout.gateway_transfer_reference,
            gateway_status=result.gateway_status,
            gateway_response=result.raw or None,
            processed_at=payout.processed_at or now,
            completed_at=now,
        ):
            await db.rollback()
            return await self.get_payout(db, payout_id)

        payout = await self.get_payout(db, payout_id)
        await settlement_service.record_payout_released(db, payout)
        self._log(db, payout_id, "completed", SYSTEM, reference=result.reference)
        await end_transaction(db)

        logger.info(f"Payout {payout_id} completed: amount={payout.actual_amount} reference={result.reference}")
        await self._notify(db, payout)
        return payout

    async def _mark_failed(
        self,
        db: AsyncSession,
        payout_id: UUID,
        reason: str,
        gateway_status: str | None = None,
        raw: dict | None = None,
    ) -> Payout:
        if not await compare_and_set(
            db, Payout, payout_id, ("approved", "processing"),
            status="failed", gateway_status=gateway_status, gateway_response=raw or None, failed_at=utcnow(),
        ):
            await db.rollback()
            return await self.get_payout(db, payout_id)

        self._log(db, payout_id, "failed", SYSTEM, reason=reason)
        if settings.payout_auto_release_on_failure:
            await self._release_lines(db, payout_id, SYSTEM)
        await end_transaction(db)

        logger.error(f"Payout {payout_id} failed: {reason}")
        payout = await self.get_payout(db, payout_id)
        await self._notify(db, payout)
        return payout

    async def release_failed_payout(self, db: AsyncSession, payout_id: UUID, staff: User) -> Payout:
        """Return a failed payout's earnings to the provider's balance."""
        payout = await self.get_payout(db, payout_id)
        if payout.status != "failed":
            raise PreconditionFailed("Only failed payouts can be released")
        released = await self._release_lines(db, payout_id, str(staff.id))
        if not released:
            await db.rollback()
            raise PreconditionFailed("Payout earnings were already released")
        await end_transaction(db)
        return await self.get_payout(db, payout_id)

    async def _release_lines(self, db: AsyncSession, payout_id: UUID, performed_by: str) -> int:
        """Release every unreleased line of a payout. Caller commits."""
        result = await db.execute(
            select(PayoutEarning.id, PayoutEarning.earning_id, PayoutEarning.amount).where(
                PayoutEarning.payout_id == payout_id, PayoutEarning.released.is_(False)
            )
        )
        lines = result.all()
        if not lines:
            return 0

        await db.execute(
            update(PayoutEarning)
            .where(PayoutEarning.id.in_([line.id for line in lines]), PayoutEarning.released.is_(False))
            .values(released=True, released_at=utcnow())
        )
        await db.execute(
            update(ProviderEarnings)
            .where(
                ProviderEarnings.id.in_([line.earning_id for line in lines]),
                ProviderEarnings.status == "paid_out",
            )
            .values(status="approved")
        )
        self._log(
            db, payout_id, "released", performed_by,
            lines=[{"earning_id": str(line.earning_id), "amount": line.amount} for line in lines],
        )
        return len(lines)

    # ==================== TRANSFER RECONCILIATION ====================

    async def refresh_transfer_status(self, db: AsyncSession, payout_id: UUID) -> Payout:
        """Ask the gateway where an approved or processing payout stands."""
        payout = await self.get_payout(db, payout_id)
        if payout.status == "approved":
            return await self.disburse(db, payout_id)
        if payout.status != "processing":
            return payout

        transfer_id = payout.transfer_id
        await end_transaction(db)
        result = await self.gateways.transfers.transfer_status(transfer_id)
        if result is None:
            logger.warning(f"Gateway has no record of processing payout {payout_id} ({transfer_id})")
            return payout
        return await self.apply_transfer_status(db, payout_id, result)

    async def poll_processing_payouts(self, db: AsyncSession) -> dict[str, int]:
        """Polling channel for transfers whose webhook never arrived."""
        result = await db.execute(
            select(Payout.id).where(
                Payout.status.in_(("approved", "processing")), Payout.transfer_id.is_not(None)
            )
        )
        payout_ids = list(result.scalars().all())
        await end_transaction(db)

        counts: dict[str, int] = {}
        for payout_id in payout_ids:
            try:
                payout = await self.refresh_transfer_status(db, payout_id)
            except GatewayUnavailable as e:
                logger.warning(f"Polling payout {payout_id} deferred: {e.reason}")
                await db.rollback()
                counts["deferred"] = counts.get("deferred", 0) + 1
                continue
            except GatewayRejected as e:
                # Left as is; staff can refresh it once the gateway recognises the transfer
                logger.error(f"Polling payout {payout_id} rejected by gateway: {e.reason}")
                await db.rollback()
                counts["rejected"] = counts.get("rejected", 0) + 1
                continue
            counts[payout.status] = counts.get(payout.status, 0) + 1
        if payout_ids:
            logger.info(f"Polled {len(payout_ids)} payouts: {counts}")
        return counts

    async def reconcile_transfer(self, db: AsyncSession, transfer_id: str) -> str:
        """Webhook entry point. The notification only says which transfer to look at."""
        result = await db.execute(select(Payout.id).where(Payout.transfer_id == transfer_id))
        payout_id = result.scalar_one_or_none()
        if payout_id is None:
            penny = await db.execute(
                select(ProviderBankAccount.id).where(ProviderBankAccount.penny_test_transfer_id == transfer_id)
            )
            if penny.scalar_one_or_none() is not None:
                return "penny_test"
            logger.warning(f"Transfer webhook for unknown transfer {transfer_id}")
            return "unknown_transfer"

        try:
            payout = await self.refresh_transfer_status(db, payout_id)
        except GatewayUnavailable as e:
            logger.warning(f"Transfer webhook for {transfer_id} deferred: {e.reason}")
            return "retry_later"
        except GatewayRejected as e:
            logger.error(f"Transfer lookup for {transfer_id} rejected: {e.reason}")
            await db.rollback()
            return "rejected"
        return payout.status

    # ==================== QUERIES ====================

    async def list_pending_payouts(self, db: AsyncSession, status: str = "requested") -> list[Payout]:
        result = await db.execute(select(Payout).where(Payout.status == status).order_by(Payout.requested_at))
        return list(result.scalars().all())

    async def get_provider_payouts(self, db: AsyncSession, provider_id: UUID, limit: int = 50) -> list[Payout]:
        result = await db.execute(
            select(Payout)
            .where(Payout.provider_id == provider_id)
            .order_by(Payout.requested_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_payout_logs(self, db: AsyncSession, payout_id: UUID) -> list[PayoutLog]:
        result = await db.execute(
            select(PayoutLog).where(PayoutLog.payout_id == payout_id).order_by(PayoutLog.created_at)
        )
        return list(result.scalars().all())

    # ==================== HELPERS ====================

    @staticmethod
    def _log(db: AsyncSession, payout_id: UUID, action: str, performed_by: str, **details) -> None:
        db.add(PayoutLog(payout_id=payout_id, action=action, details=details or None, performed_by=performed_by))

    async def _notify(self, db: AsyncSession, payout: Payout) -> None:
        provider = await db.get(Provider, payout.provider_id)
        user = await db.get(User, provider.user_id) if provider else None
        if user is not None:
            await self.notifier.notify_payout_status(payout, user)


payout_service = PayoutService()
