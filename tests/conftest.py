"""Pytest fixtures for ledger tests.

Each test gets its own file-backed SQLite database so separate sessions
(used to exercise concurrent callers) see each other's commits.
"""

from collections.abc import AsyncGenerator, Mapping
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import consultpay.models  # noqa: F401
from consultpay.core.encryption import encrypt_account_number, mask_account_number
from consultpay.core.exceptions import GatewayRejected, GatewayUnavailable
from consultpay.core.immutability import register_immutability_enforcement
from consultpay.database import Base, utcnow
from consultpay.gateways.base import (
    Beneficiary,
    CheckoutSession,
    CustomerDetails,
    GatewayStatus,
    GatewayType,
    NormalizedStatus,
    PaymentGateway,
    RefundResult,
    TransferGateway,
    TransferResult,
    TransferStatus,
    WebhookEvent,
)
from consultpay.models.bank_account import ProviderBankAccount
from consultpay.models.booking import Booking
from consultpay.models.earnings import ProviderEarnings
from consultpay.models.payment import Transaction
from consultpay.models.user import Provider, User
from consultpay.services.bank_account_service import BankAccountService, penny_transfer_id
from consultpay.services.cancellation_service import CancellationService
from consultpay.services.commission_service import CommissionService
from consultpay.services.dispute_service import DisputeService
from consultpay.services.earnings_service import EarningsService
from consultpay.services.gateway_service import GatewayService
from consultpay.services.meeting_service import MeetingService
from consultpay.services.notification_service import NotificationService
from consultpay.services.payment_reconciler import PaymentReconciler
from consultpay.services.payout_allocator import PayoutAllocator
from consultpay.services.payout_service import PayoutService


# ==================== FAKE GATEWAYS ====================


class FakePaymentGateway(PaymentGateway):
    """In-memory gateway. Tests move orders along with mark_* helpers."""

    def __init__(self, gateway_type: GatewayType = GatewayType.CASHFREE):
        self._type = gateway_type
        self._orders: dict[str, GatewayStatus] = {}
        self.refunds: dict[str, RefundResult] = {}
        self.refund_calls = 0
        self.captures: list[str] = []
        self.unavailable = False
        self.reject_refunds = False
        # Orders the gateway claims not to know
        self.rejected_orders: set[str] = set()
        self._counter = 0

    @property
    def gateway_type(self) -> GatewayType:
        return self._type

    def _check_available(self) -> None:
        if self.unavailable:
            raise GatewayUnavailable(self._type.value, "simulated outage")

    async def create_session(
        self, booking_id: UUID, amount: int, currency: str, customer: CustomerDetails
    ) -> CheckoutSession:
        self._check_available()
        self._counter += 1
        order_id = f"order_{booking_id.hex[:12]}_{self._counter}"
        self._orders[order_id] = GatewayStatus(
            order_id=order_id, status=NormalizedStatus.PENDING, amount=amount, gateway_status="ACTIVE"
        )
        return CheckoutSession(order_id=order_id, pay_url=f"https://pay.test/{order_id}")

    def mark_paid(self, order_id: str, amount: int | None = None) -> None:
        current = self._orders[order_id]
        self._orders[order_id] = GatewayStatus(
            order_id=order_id,
            status=NormalizedStatus.PAID,
            amount=amount if amount is not None else current.amount,
            capture_id=f"cap_{order_id}",
            gateway_status="PAID",
        )

    def mark_failed(self, order_id: str) -> None:
        current = self._orders[order_id]
        self._orders[order_id] = GatewayStatus(
            order_id=order_id, status=NormalizedStatus.FAILED, amount=current.amount, gateway_status="FAILED"
        )

    def mark_approved(self, order_id: str) -> None:
        """Payer approved, capture still outstanding."""
        current = self._orders[order_id]
        self._orders[order_id] = GatewayStatus(
            order_id=order_id,
            status=NormalizedStatus.PENDING,
            amount=current.amount,
            requires_capture=True,
            gateway_status="APPROVED",
        )

    async def verify_status(self, order_id: str) -> GatewayStatus:
        self._check_available()
        if order_id in self.rejected_orders:
            raise GatewayRejected(self._type.value, "order not found")
        return self._orders[order_id]

    async def capture(self, order_id: str) -> GatewayStatus:
        self._check_available()
        self.captures.append(order_id)
        self.mark_paid(order_id)
        return self._orders[order_id]

    async def refund(self, order_id: str, capture_id: str | None, amount: int, reason: str) -> RefundResult:
        self._check_available()
        self.refund_calls += 1
        if self.reject_refunds:
            raise GatewayRejected(self._type.value, "refund declined")
        if order_id not in self.refunds:
            self.refunds[order_id] = RefundResult(refund_id=f"refund_{order_id}", status="SUCCESS")
        return self.refunds[order_id]

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        order_id = payload.decode("utf-8")
        return WebhookEvent(gateway=self._type.value, reference=order_id, event_type="PAYMENT")


class FakeTransferGateway(TransferGateway):
    """In-memory transfer gateway. Transfers are idempotent per transfer id."""

    name = "fake_payouts"

    def __init__(self):
        self._transfers: dict[str, TransferResult] = {}
        self.sent: list[tuple[str, int, Beneficiary]] = []
        self.unavailable = False
        self.reject = False
        self.initial_status = TransferStatus.PROCESSING
        self.rejected_lookups: set[str] = set()

    def _check_available(self) -> None:
        if self.unavailable:
            raise GatewayUnavailable(self.name, "simulated outage")

    async def transfer(self, transfer_id: str, amount: int, beneficiary: Beneficiary, remarks: str) -> TransferResult:
        self._check_available()
        if self.reject:
            raise GatewayRejected(self.name, "invalid beneficiary account")
        if transfer_id not in self._transfers:
            self.sent.append((transfer_id, amount, beneficiary))
            self._transfers[transfer_id] = TransferResult(
                transfer_id=transfer_id,
                status=self.initial_status,
                reference=f"utr_{transfer_id}",
                gateway_status=self.initial_status.value.upper(),
            )
        return self._transfers[transfer_id]

    async def transfer_status(self, transfer_id: str) -> TransferResult | None:
        self._check_available()
        if transfer_id in self.rejected_lookups:
            raise GatewayRejected(self.name, "unknown transfer id")
        return self._transfers.get(transfer_id)

    def settle(self, transfer_id: str, status: TransferStatus = TransferStatus.COMPLETED, reason: str | None = None):
        self._transfers[transfer_id] = TransferResult(
            transfer_id=transfer_id,
            status=status,
            reference=f"utr_{transfer_id}",
            gateway_status=status.value.upper(),
            reason=reason,
        )

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        return WebhookEvent(gateway=self.name, reference=payload.decode("utf-8"), event_type="TRANSFER")


class RecordingNotifier(NotificationService):
    """Records messages instead of calling SendGrid or Twilio."""

    def __init__(self):
        super().__init__()
        self.emails: list[tuple[str, str]] = []
        self.sms: list[tuple[str, str]] = []

    async def send_email(self, to_email, subject, html_content, text_content=None) -> bool:
        self.emails.append((to_email, subject))
        return True

    async def send_sms(self, to_phone, message) -> bool:
        self.sms.append((to_phone, message))
        return True


# ==================== DATABASE ====================


@pytest.fixture(scope="session", autouse=True)
def immutability():
    register_immutability_enforcement()


@pytest.fixture
async def engine(tmp_path):
    """Create test database engine."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ==================== SERVICES ====================


@pytest.fixture
def payment_gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def paypal_gateway() -> FakePaymentGateway:
    return FakePaymentGateway(GatewayType.PAYPAL)


@pytest.fixture
def transfer_gateway() -> FakeTransferGateway:
    return FakeTransferGateway()


@pytest.fixture
def gateways(payment_gateway, paypal_gateway, transfer_gateway) -> GatewayService:
    return GatewayService(
        {GatewayType.CASHFREE: payment_gateway, GatewayType.PAYPAL: paypal_gateway}, transfer_gateway
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def reconciler(gateways, notifier) -> PaymentReconciler:
    return PaymentReconciler(gateways, notifier, MeetingService("https://meet.test"))


@pytest.fixture
def earnings() -> EarningsService:
    return EarningsService(CommissionService(Decimal("0.15")))


@pytest.fixture
def disputes(gateways, notifier) -> DisputeService:
    return DisputeService(gateways, notifier)


@pytest.fixture
def cancellations(gateways, notifier) -> CancellationService:
    return CancellationService(gateways, notifier)


@pytest.fixture
def bank_accounts(gateways) -> BankAccountService:
    return BankAccountService(gateways)


@pytest.fixture
def payouts(gateways, notifier) -> PayoutService:
    return PayoutService(gateways, notifier)


@pytest.fixture
def allocator() -> PayoutAllocator:
    return PayoutAllocator()


# ==================== DATA ====================


@pytest.fixture
async def seeker(db) -> User:
    user = User(email="seeker@example.com", full_name="Asha Seeker", phone="+919800000001", role="seeker")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def provider_user(db) -> User:
    user = User(email="provider@example.com", full_name="Ravi Provider", phone="+919800000002", role="provider")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def provider(db, provider_user) -> Provider:
    provider = Provider(user_id=provider_user.id, display_name="Ravi Consulting")
    db.add(provider)
    await db.commit()
    return provider


@pytest.fixture
async def staff(db) -> User:
    user = User(email="staff@example.com", full_name="Ops Staff", role="staff")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
def make_booking(db, seeker, provider):
    """Factory for bookings relative to now."""

    async def _make(
        status: str = "pending",
        amount: int = 100000,
        starts_in: timedelta = timedelta(days=1),
        duration: timedelta = timedelta(hours=1),
    ) -> Booking:
        start = utcnow() + starts_in
        booking = Booking(
            seeker_id=seeker.id,
            provider_id=provider.id,
            start_time=start,
            end_time=start + duration,
            amount=amount,
            currency="INR",
            status=status,
        )
        db.add(booking)
        await db.commit()
        return booking

    return _make


@pytest.fixture
def make_paid_booking(db, make_booking):
    """Confirmed booking with a completed payment."""

    async def _make(amount: int = 100000, starts_in: timedelta = timedelta(days=1)) -> Booking:
        booking = await make_booking(status="confirmed", amount=amount, starts_in=starts_in)
        db.add(
            Transaction(
                booking_id=booking.id,
                reference=f"TXN-{uuid4().hex[:16].upper()}",
                gateway="cashfree",
                gateway_order_id=f"order_paid_{booking.id.hex[:12]}",
                capture_id=f"cap_{booking.id.hex[:12]}",
                amount=amount,
                currency="INR",
                status="completed",
                completed_at=utcnow(),
            )
        )
        await db.commit()
        return booking

    return _make


@pytest.fixture
def make_earning(db, make_paid_booking, provider):
    """Earnings row for a fresh paid booking."""

    async def _make(
        net_amount: int,
        status: str = "approved",
        created_at: datetime | None = None,
        dispute_deadline: datetime | None = None,
    ) -> ProviderEarnings:
        booking = await make_paid_booking(amount=net_amount)
        booking.status = "completed"
        now = utcnow()
        earning = ProviderEarnings(
            booking_id=booking.id,
            provider_id=provider.id,
            gross_amount=net_amount,
            commission_rate=Decimal("0"),
            commission_amount=0,
            net_amount=net_amount,
            status=status,
            dispute_deadline=dispute_deadline or now - timedelta(hours=1),
            created_at=created_at or now,
        )
        db.add(earning)
        await db.commit()
        return earning

    return _make


@pytest.fixture
async def verified_account(db, provider) -> ProviderBankAccount:
    account_id = uuid4()
    account = ProviderBankAccount(
        id=account_id,
        provider_id=provider.id,
        account_holder_name="Ravi Kumar",
        account_number_encrypted=encrypt_account_number("123456789012"),
        account_number_masked=mask_account_number("123456789012"),
        ifsc_code="HDFC0001234",
        bank_name="HDFC Bank",
        status="verified",
        is_active=True,
        penny_test_amount=123,
        penny_test_transfer_id=penny_transfer_id(account_id),
        verified_at=utcnow(),
    )
    db.add(account)
    await db.commit()
    return account
