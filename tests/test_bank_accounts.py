"""Tests for bank account registration, penny test verification and deletion."""

import pytest

from consultpay.core.encryption import decrypt_account_number
from consultpay.core.exceptions import GatewayRejected, PreconditionFailed, ValidationError
from consultpay.gateways.base import TransferStatus
from consultpay.models.bank_account import ProviderBankAccount
from consultpay.services.bank_account_service import penny_transfer_id, validate_bank_details
from consultpay.services.ledger_store import reload


async def add_account(bank_accounts, db, provider, number: str = "123456789012"):
    return await bank_accounts.add_bank_account(
        db,
        provider,
        account_holder_name="Ravi Kumar",
        account_number=number,
        ifsc_code="hdfc0001234",
        bank_name="HDFC Bank",
    )


def rupees(paise: int) -> str:
    return f"{paise / 100:.2f}"


class TestValidateBankDetails:
    def test_normalises(self):
        assert validate_bank_details(" Ravi ", "1234 5678-9012", "hdfc0001234", "savings") == (
            "Ravi",
            "123456789012",
            "HDFC0001234",
        )

    def test_collects_field_errors(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_bank_details("R", "12", "BAD", "fixed")
        fields = {error["field"] for error in exc_info.value.errors}
        assert fields == {"account_holder_name", "account_number", "ifsc_code", "account_type"}


class TestAddBankAccount:
    async def test_sends_penny_test(self, db, bank_accounts, provider, transfer_gateway):
        account = await add_account(bank_accounts, db, provider)

        assert account.status == "penny_test_sent"
        assert account.is_active is False
        assert 100 <= account.penny_test_amount <= 999
        assert account.account_number_masked == "********9012"
        assert decrypt_account_number(account.account_number_encrypted) == "123456789012"

        [(transfer_id, amount, beneficiary)] = transfer_gateway.sent
        assert transfer_id == penny_transfer_id(account.id)
        assert amount == account.penny_test_amount
        assert beneficiary.beneficiary_id == f"prov{provider.id.hex[:20]}"
        assert beneficiary.account_number == "123456789012"
        assert beneficiary.ifsc == "HDFC0001234"

    async def test_one_account_per_provider(self, db, bank_accounts, provider):
        await add_account(bank_accounts, db, provider)
        with pytest.raises(PreconditionFailed):
            await add_account(bank_accounts, db, provider, number="999988887777")

    async def test_rejected_transfer_discards_account(self, db, bank_accounts, provider, transfer_gateway):
        transfer_gateway.reject = True
        with pytest.raises(GatewayRejected):
            await add_account(bank_accounts, db, provider)

        assert await bank_accounts.get_current_account(db, provider.id) is None

        transfer_gateway.reject = False
        account = await add_account(bank_accounts, db, provider)
        assert account.status == "penny_test_sent"

    async def test_failed_transfer_discards_account(self, db, bank_accounts, provider, transfer_gateway):
        transfer_gateway.initial_status = TransferStatus.FAILED
        with pytest.raises(GatewayRejected):
            await add_account(bank_accounts, db, provider)
        assert await bank_accounts.get_current_account(db, provider.id) is None

    async def test_outage_leaves_account_pending(self, db, bank_accounts, provider, transfer_gateway):
        transfer_gateway.unavailable = True
        account = await add_account(bank_accounts, db, provider)
        assert account.status == "pending"

        transfer_gateway.unavailable = False
        account = await bank_accounts.resend_penny_test(db, provider)

        assert account.status == "penny_test_sent"
        assert len(transfer_gateway.sent) == 1

    async def test_resend_does_not_pay_twice(self, db, bank_accounts, provider, transfer_gateway):
        """A transfer the gateway already knows about is adopted, not re-sent."""
        transfer_gateway.unavailable = True
        account = await add_account(bank_accounts, db, provider)
        transfer_gateway.unavailable = False
        await transfer_gateway.transfer(
            account.penny_test_transfer_id, account.penny_test_amount, None, "Account verification"
        )

        await bank_accounts.resend_penny_test(db, provider)

        assert len(transfer_gateway.sent) == 1


class TestVerifyPennyTest:
    async def test_correct_amount_verifies(self, db, bank_accounts, provider):
        account = await add_account(bank_accounts, db, provider)

        result = await bank_accounts.verify_penny_test(db, provider, rupees(account.penny_test_amount))

        assert result.verified is True
        assert result.status == "verified"
        account = await reload(db, ProviderBankAccount, account.id)
        assert account.status == "verified"
        assert account.is_active is True

    async def test_wrong_amounts_exhaust_attempts(self, db, bank_accounts, provider):
        account = await add_account(bank_accounts, db, provider)
        wrong = rupees(account.penny_test_amount + 1 if account.penny_test_amount < 999 else 100)

        remaining = []
        for _ in range(3):
            result = await bank_accounts.verify_penny_test(db, provider, wrong)
            assert result.verified is False
            remaining.append(result.attempts_remaining)

        assert remaining == [2, 1, 0]
        assert result.status == "rejected"
        with pytest.raises(PreconditionFailed):
            await bank_accounts.verify_penny_test(db, provider, rupees(account.penny_test_amount))

    async def test_rejected_account_can_be_replaced(self, db, bank_accounts, provider):
        account = await add_account(bank_accounts, db, provider)
        wrong = rupees(account.penny_test_amount + 1 if account.penny_test_amount < 999 else 100)
        for _ in range(3):
            await bank_accounts.verify_penny_test(db, provider, wrong)

        replacement = await add_account(bank_accounts, db, provider, number="555566667777")

        assert replacement.id != account.id
        assert (await reload(db, ProviderBankAccount, account.id)).status == "deleted"

    async def test_not_a_number(self, db, bank_accounts, provider):
        await add_account(bank_accounts, db, provider)
        with pytest.raises(ValidationError):
            await bank_accounts.verify_penny_test(db, provider, "one rupee")

    @pytest.mark.parametrize("claimed", ["NaN", "sNaN", "Infinity", "-inf"])
    async def test_non_finite_amount_rejected(self, db, bank_accounts, provider, claimed):
        account = await add_account(bank_accounts, db, provider)

        with pytest.raises(ValidationError):
            await bank_accounts.verify_penny_test(db, provider, claimed)

        account = await reload(db, ProviderBankAccount, account.id)
        assert account.status == "penny_test_sent"
        assert account.verification_attempts == 0

    async def test_already_verified(self, db, bank_accounts, provider, verified_account):
        with pytest.raises(PreconditionFailed):
            await bank_accounts.verify_penny_test(db, provider, "1.23")


class TestDeletion:
    async def test_approved_deletion_removes_account(self, db, bank_accounts, provider, verified_account, staff):
        request = await bank_accounts.request_deletion(db, provider, "Switching to a different bank")

        resolved = await bank_accounts.resolve_deletion(db, request.id, staff, approve=True)

        assert resolved.status == "approved"
        account = await reload(db, ProviderBankAccount, verified_account.id)
        assert account.status == "deleted"
        assert account.is_active is False

    async def test_rejected_deletion_keeps_account(self, db, bank_accounts, provider, verified_account, staff):
        request = await bank_accounts.request_deletion(db, provider, "Switching to a different bank")

        resolved = await bank_accounts.resolve_deletion(db, request.id, staff, approve=False, note="Payout pending")

        assert resolved.status == "rejected"
        assert (await reload(db, ProviderBankAccount, verified_account.id)).status == "verified"

    async def test_one_pending_request(self, db, bank_accounts, provider, verified_account):
        await bank_accounts.request_deletion(db, provider)
        with pytest.raises(PreconditionFailed):
            await bank_accounts.request_deletion(db, provider)

    async def test_in_flight_payout_blocks_deletion(
        self, db, bank_accounts, allocator, provider, verified_account, make_earning, staff
    ):
        await make_earning(150000)
        await allocator.request_payout(db, provider, 100000)
        request = await bank_accounts.request_deletion(db, provider, "Switching to a different bank")

        with pytest.raises(PreconditionFailed):
            await bank_accounts.resolve_deletion(db, request.id, staff, approve=True)

        assert (await reload(db, ProviderBankAccount, verified_account.id)).status == "verified"
