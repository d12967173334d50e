"""Tests for payout review, disbursement and transfer reconciliation."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from consultpay.config import settings
from consultpay.core.encryption import encrypt_account_number, mask_account_number
from consultpay.core.exceptions import PreconditionFailed, ValidationError
from consultpay.database import utcnow
from consultpay.gateways.base import TransferStatus
from consultpay.models.bank_account import ProviderBankAccount
from consultpay.models.booking import Booking
from consultpay.models.earnings import ProviderEarnings
from consultpay.models.financial import SettlementLedgerEntry
from consultpay.models.payout import PayoutEarning
from consultpay.models.user import Provider, User
from consultpay.services.bank_account_service import penny_transfer_id
from consultpay.services.ledger_store import reload
from consultpay.services.payout_service import payout_transfer_id


@pytest.fixture
def requested_payout(db, allocator, provider, verified_account, make_earning):
    """A payout of 120000 paise funded by a 100000 and part of a 50000 earning."""

    async def _make():
        now = utcnow()
        first = await make_earning(100000, created_at=now - timedelta(days=2))
        second = await make_earning(50000, created_at=now - timedelta(days=1))
        payout = await allocator.request_payout(db, provider, 120000)
        return payout, first, second

    return _make


async def payout_actions(payouts, db, payout_id) -> list[str]:
    return [log.action for log in await payouts.get_payout_logs(db, payout_id)]


async def other_provider_payout(db, allocator, seeker):
    """Requested payout of 120000 paise for a second provider with its own account and earning."""
    user = User(email="meera@example.com", full_name="Meera Provider", role="provider")
    db.add(user)
    await db.flush()
    provider = Provider(user_id=user.id, display_name="Meera Advisory")
    db.add(provider)
    await db.flush()

    account_id = uuid4()
    db.add(
        ProviderBankAccount(
            id=account_id,
            provider_id=provider.id,
            account_holder_name="Meera Iyer",
            account_number_encrypted=encrypt_account_number("998877665544"),
            account_number_masked=mask_account_number("998877665544"),
            ifsc_code="ICIC0004321",
            bank_name="ICICI Bank",
            status="verified",
            is_active=True,
            penny_test_amount=321,
            penny_test_transfer_id=penny_transfer_id(account_id),
            verified_at=utcnow(),
        )
    )
    start = utcnow() - timedelta(days=3)
    booking = Booking(
        seeker_id=seeker.id,
        provider_id=provider.id,
        start_time=start,
        end_time=start + timedelta(hours=1),
        amount=150000,
        currency="INR",
        status="completed",
    )
    db.add(booking)
    await db.flush()
    db.add(
        ProviderEarnings(
            booking_id=booking.id,
            provider_id=provider.id,
            gross_amount=150000,
            commission_rate=Decimal("0"),
            commission_amount=0,
            net_amount=150000,
            status="approved",
            dispute_deadline=utcnow() - timedelta(hours=1),
        )
    )
    await db.commit()
    return await allocator.request_payout(db, provider, 120000)


class TestApprovePayout:
    async def test_approve_sends_transfer(self, db, payouts, requested_payout, staff, transfer_gateway, provider):
        payout, _, _ = await requested_payout()

        payout = await payouts.approve_payout(db, payout.id, staff, transaction_fee=2500)

        assert payout.status == "processing"
        assert payout.actual_amount == 117500
        assert payout.transfer_id == payout_transfer_id(payout.id)
        assert payout.approved_by == staff.id
        [(transfer_id, amount, beneficiary)] = transfer_gateway.sent
        assert transfer_id == payout.transfer_id
        assert amount == 117500
        assert beneficiary.beneficiary_id == f"prov{provider.id.hex[:20]}"
        assert await payout_actions(payouts, db, payout.id) == ["requested", "approved", "processing"]

    async def test_fee_above_maximum(self, db, payouts, requested_payout, staff):
        payout, _, _ = await requested_payout()
        with pytest.raises(PreconditionFailed):
            await payouts.approve_payout(db, payout.id, staff, transaction_fee=settings.payout_max_transaction_fee + 1)

    async def test_cannot_approve_twice(self, db, payouts, requested_payout, staff, transfer_gateway):
        payout, _, _ = await requested_payout()
        await payouts.approve_payout(db, payout.id, staff)
        with pytest.raises(PreconditionFailed):
            await payouts.approve_payout(db, payout.id, staff)
        assert len(transfer_gateway.sent) == 1

    async def test_outage_leaves_payout_approved(self, db, payouts, requested_payout, staff, transfer_gateway):
        payout, _, _ = await requested_payout()
        transfer_gateway.unavailable = True

        payout = await payouts.approve_payout(db, payout.id, staff)

        assert payout.status == "approved"
        assert "disbursement_deferred" in await payout_actions(payouts, db, payout.id)

        transfer_gateway.unavailable = False
        counts = await payouts.poll_processing_payouts(db)

        assert counts == {"processing": 1}
        assert len(transfer_gateway.sent) == 1

    async def test_gateway_rejection_fails_payout(self, db, payouts, requested_payout, staff, transfer_gateway):
        payout, first, second = await requested_payout()
        transfer_gateway.reject = True

        payout = await payouts.approve_payout(db, payout.id, staff)

        assert payout.status == "failed"
        assert (await reload(db, ProviderEarnings, first.id)).status == "approved"


class TestTransferCompletion:
    async def test_completed_transfer_writes_ledger(
        self, db, payouts, requested_payout, staff, transfer_gateway, notifier
    ):
        payout, first, _ = await requested_payout()
        payout = await payouts.approve_payout(db, payout.id, staff, transaction_fee=2500)
        transfer_gateway.settle(payout.transfer_id, TransferStatus.COMPLETED)

        payout = await payouts.refresh_transfer_status(db, payout.id)

        assert payout.status == "completed"
        assert payout.gateway_transfer_reference == f"utr_{payout.transfer_id}"
        result = await db.execute(
            select(SettlementLedgerEntry).where(SettlementLedgerEntry.entry_type == "payout_released")
        )
        entry = result.scalar_one()
        assert entry.amount == 117500
        assert entry.payout_id == payout.id
        assert (await reload(db, ProviderEarnings, first.id)).status == "paid_out"
        assert ("provider@example.com", "Payout completed") in notifier.emails

    async def test_completion_is_idempotent(self, db, payouts, requested_payout, staff, transfer_gateway):
        payout, _, _ = await requested_payout()
        payout = await payouts.approve_payout(db, payout.id, staff)
        transfer_gateway.settle(payout.transfer_id, TransferStatus.COMPLETED)

        await payouts.reconcile_transfer(db, payout.transfer_id)
        status = await payouts.reconcile_transfer(db, payout.transfer_id)

        assert status == "completed"
        result = await db.execute(
            select(SettlementLedgerEntry).where(SettlementLedgerEntry.payout_id == payout.id)
        )
        assert len(result.scalars().all()) == 1

    async def test_immediate_completion(self, db, payouts, requested_payout, staff, transfer_gateway):
        transfer_gateway.initial_status = TransferStatus.COMPLETED
        payout, _, _ = await requested_payout()

        payout = await payouts.approve_payout(db, payout.id, staff)

        assert payout.status == "completed"

    async def test_failed_transfer_releases_earnings(
        self, db, payouts, earnings, requested_payout, staff, transfer_gateway, provider
    ):
        payout, first, second = await requested_payout()
        payout = await payouts.approve_payout(db, payout.id, staff)
        transfer_gateway.settle(payout.transfer_id, TransferStatus.FAILED, reason="Account closed")

        payout = await payouts.refresh_transfer_status(db, payout.id)

        assert payout.status == "failed"
        assert (await reload(db, ProviderEarnings, first.id)).status == "approved"
        lines = await db.execute(select(PayoutEarning.released).where(PayoutEarning.payout_id == payout.id))
        assert all(lines.scalars().all())
        balance = await earnings.get_provider_balance(db, provider.id)
        assert balance.available == 150000
        actions = await payout_actions(payouts, db, payout.id)
        assert actions[:3] == ["requested", "approved", "processing"]
        assert sorted(actions[3:]) == ["failed", "released"]

    async def test_manual_release_when_auto_release_disabled(
        self, db, payouts, requested_payout, staff, transfer_gateway, monkeypatch
    ):
        monkeypatch.setattr(settings, "payout_auto_release_on_failure", False)
        payout, first, _ = await requested_payout()
        payout = await payouts.approve_payout(db, payout.id, staff)
        transfer_gateway.settle(payout.transfer_id, TransferStatus.FAILED)
        await payouts.refresh_transfer_status(db, payout.id)
        assert (await reload(db, ProviderEarnings, first.id)).status == "paid_out"

        await payouts.release_failed_payout(db, payout.id, staff)

        assert (await reload(db, ProviderEarnings, first.id)).status == "approved"
        with pytest.raises(PreconditionFailed):
            await payouts.release_failed_payout(db, payout.id, staff)

    async def test_new_payout_after_failure(
        self, db, payouts, allocator, requested_payout, staff, transfer_gateway, provider
    ):
        """Released earnings fund the next request."""
        payout, _, _ = await requested_payout()
        payout = await payouts.approve_payout(db, payout.id, staff)
        transfer_gateway.settle(payout.transfer_id, TransferStatus.FAILED)
        await payouts.refresh_transfer_status(db, payout.id)

        retry = await allocator.request_payout(db, provider, 150000)

        assert retry.status == "requested"


class TestRejectPayout:
    async def test_reject_releases_earnings(self, db, payouts, earnings, requested_payout, staff, provider, notifier):
        payout, first, second = await requested_payout()

        payout = await payouts.reject_payout(db, payout.id, staff, "Bank details under review")

        assert payout.status == "rejected"
        assert payout.rejection_reason == "Bank details under review"
        assert (await reload(db, ProviderEarnings, first.id)).status == "approved"
        balance = await earnings.get_provider_balance(db, provider.id)
        assert balance.available == 150000
        assert ("provider@example.com", "Payout rejected") in notifier.emails

    async def test_reason_required(self, db, payouts, requested_payout, staff):
        payout, _, _ = await requested_payout()
        with pytest.raises(ValidationError):
            await payouts.reject_payout(db, payout.id, staff, "  ")

    async def test_cannot_reject_approved(self, db, payouts, requested_payout, staff):
        payout, _, _ = await requested_payout()
        await payouts.approve_payout(db, payout.id, staff)
        with pytest.raises(PreconditionFailed):
            await payouts.reject_payout(db, payout.id, staff, "Too late")


class TestReconcileTransfer:
    async def test_unknown_transfer(self, db, payouts):
        assert await payouts.reconcile_transfer(db, "payout_unknown") == "unknown_transfer"

    async def test_penny_transfer(self, db, payouts, verified_account):
        assert await payouts.reconcile_transfer(db, verified_account.penny_test_transfer_id) == "penny_test"

    async def test_rejected_lookup_keeps_payout_processing(
        self, db, payouts, requested_payout, staff, transfer_gateway
    ):
        payout, _, _ = await requested_payout()
        payout = await payouts.approve_payout(db, payout.id, staff)
        transfer_gateway.rejected_lookups.add(payout.transfer_id)

        assert await payouts.reconcile_transfer(db, payout.transfer_id) == "rejected"
        assert (await payouts.get_payout(db, payout.id)).status == "processing"


class TestPollProcessingPayouts:
    async def test_rejected_lookup_does_not_stop_the_batch(
        self, db, payouts, allocator, requested_payout, seeker, staff, transfer_gateway
    ):
        unknown, _, _ = await requested_payout()
        settled = await other_provider_payout(db, allocator, seeker)
        unknown = await payouts.approve_payout(db, unknown.id, staff)
        settled = await payouts.approve_payout(db, settled.id, staff)
        transfer_gateway.rejected_lookups.add(unknown.transfer_id)
        transfer_gateway.settle(settled.transfer_id, TransferStatus.COMPLETED)

        counts = await payouts.poll_processing_payouts(db)

        assert counts == {"rejected": 1, "completed": 1}
        assert (await payouts.get_payout(db, unknown.id)).status == "processing"
        assert (await payouts.get_payout(db, settled.id)).status == "completed"

        transfer_gateway.rejected_lookups.clear()
        transfer_gateway.settle(unknown.transfer_id, TransferStatus.COMPLETED)
        assert await payouts.poll_processing_payouts(db) == {"completed": 1}
