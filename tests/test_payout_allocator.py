"""Tests for FIFO allocation of approved earnings to payout requests."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from consultpay.core.exceptions import InsufficientBalance, PreconditionFailed, ValidationError
from consultpay.database import utcnow
from consultpay.models.earnings import ProviderEarnings
from consultpay.models.payout import Payout, PayoutEarning, PayoutLog
from consultpay.services.ledger_store import reload
from consultpay.services.payout_allocator import allocate


class TestAllocate:
    def test_oldest_first_with_partial_last(self):
        a, b, c = uuid4(), uuid4(), uuid4()

        lines = allocate([(a, 100000), (b, 50000), (c, 30000)], 120000)

        assert [(line.earning_id, line.amount, line.consumes_earning) for line in lines] == [
            (a, 100000, True),
            (b, 20000, False),
        ]

    def test_exact_amount_consumes_everything(self):
        a, b = uuid4(), uuid4()
        lines = allocate([(a, 60000), (b, 40000)], 100000)
        assert all(line.consumes_earning for line in lines)
        assert sum(line.amount for line in lines) == 100000

    def test_skips_exhausted_earnings(self):
        a, b = uuid4(), uuid4()
        lines = allocate([(a, 0), (b, 40000)], 10000)
        assert [line.earning_id for line in lines] == [b]

    def test_insufficient(self):
        with pytest.raises(InsufficientBalance):
            allocate([(uuid4(), 50000)], 50001)


class TestRequestPayout:
    async def test_allocates_fifo(self, db, allocator, provider, verified_account, make_earning):
        now = utcnow()
        oldest = await make_earning(100000, created_at=now - timedelta(days=3))
        middle = await make_earning(50000, created_at=now - timedelta(days=2))
        newest = await make_earning(30000, created_at=now - timedelta(days=1))

        payout = await allocator.request_payout(db, provider, 120000)

        assert payout.status == "requested"
        assert payout.requested_amount == 120000
        assert payout.bank_account_id == verified_account.id
        result = await db.execute(
            select(PayoutEarning).where(PayoutEarning.payout_id == payout.id).order_by(PayoutEarning.position)
        )
        lines = [(line.earning_id, line.amount) for line in result.scalars()]
        assert lines == [(oldest.id, 100000), (middle.id, 20000)]

        assert (await reload(db, ProviderEarnings, oldest.id)).status == "paid_out"
        assert (await reload(db, ProviderEarnings, middle.id)).status == "approved"
        assert (await reload(db, ProviderEarnings, newest.id)).status == "approved"

        logs = await db.execute(select(PayoutLog.action).where(PayoutLog.payout_id == payout.id))
        assert logs.scalars().all() == ["requested"]

    async def test_partial_earning_keeps_remainder_available(
        self, db, allocator, earnings, provider, verified_account, make_earning
    ):
        await make_earning(100000, created_at=utcnow() - timedelta(days=3))
        await make_earning(50000, created_at=utcnow() - timedelta(days=2))
        await allocator.request_payout(db, provider, 120000)

        balance = await earnings.get_provider_balance(db, provider.id)

        assert balance.approved == 50000
        assert balance.allocated == 20000
        assert balance.available == 30000
        remaining = await allocator.available_earnings(db, provider.id)
        assert [amount for _, amount in remaining] == [30000]

    async def test_below_minimum(self, db, allocator, provider, verified_account, make_earning):
        await make_earning(500000)
        with pytest.raises(ValidationError):
            await allocator.request_payout(db, provider, 99999)

    async def test_above_maximum(self, db, allocator, provider, verified_account):
        with pytest.raises(ValidationError):
            await allocator.request_payout(db, provider, 10000001)

    async def test_insufficient_balance(self, db, allocator, provider, verified_account, make_earning):
        await make_earning(100000)
        await make_earning(50000, status="pending", dispute_deadline=utcnow() + timedelta(hours=1))
        with pytest.raises(InsufficientBalance):
            await allocator.request_payout(db, provider, 150000)

    async def test_requires_verified_account(self, db, allocator, provider, make_earning):
        await make_earning(150000)
        with pytest.raises(PreconditionFailed):
            await allocator.request_payout(db, provider, 100000)

    async def test_unverified_account_rejected(self, db, allocator, provider, verified_account, make_earning):
        verified_account.status = "penny_test_sent"
        verified_account.is_active = False
        await db.commit()
        await make_earning(150000)

        with pytest.raises(PreconditionFailed):
            await allocator.request_payout(db, provider, 100000)

    async def test_one_payout_in_flight(self, db, allocator, provider, verified_account, make_earning):
        await make_earning(300000)
        await allocator.request_payout(db, provider, 100000)
        with pytest.raises(PreconditionFailed):
            await allocator.request_payout(db, provider, 100000)

    async def test_concurrent_requests_create_one_payout(
        self, session_factory, db, allocator, provider, verified_account, make_earning
    ):
        """Two withdrawals submitted at once: the in-flight index lets one through."""
        earning = await make_earning(300000)

        async def request():
            async with session_factory() as session:
                return await allocator.request_payout(session, provider, 100000)

        results = await asyncio.gather(request(), request(), return_exceptions=True)

        created = [r for r in results if isinstance(r, Payout)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(created) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], PreconditionFailed)

        count = await db.execute(select(func.count(Payout.id)).where(Payout.provider_id == provider.id))
        assert count.scalar_one() == 1
        lines = await db.execute(select(PayoutEarning).where(PayoutEarning.earning_id == earning.id))
        assert [line.amount for line in lines.scalars().all()] == [100000]
