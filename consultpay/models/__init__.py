"""Database models."""

from consultpay.models.admin import AuditLog, Dispute
from consultpay.models.bank_account import BankAccountDeleteRequest, ProviderBankAccount
from consultpay.models.booking import Booking
from consultpay.models.earnings import ProviderEarnings
from consultpay.models.financial import SettlementLedgerEntry
from consultpay.models.payment import ExpiredOrder, Transaction
from consultpay.models.payout import Payout, PayoutEarning, PayoutLog
from consultpay.models.user import Provider, User

__all__ = [
    "AuditLog",
    "BankAccountDeleteRequest",
    "Booking",
    "Dispute",
    "ExpiredOrder",
    "Payout",
    "PayoutEarning",
    "PayoutLog",
    "Provider",
    "ProviderBankAccount",
    "ProviderEarnings",
    "SettlementLedgerEntry",
    "Transaction",
    "User",
]
