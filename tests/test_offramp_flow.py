"""
End-to-end off-ramp flow through the orchestrator:
create withdrawal -> verify deposit -> payout initiated -> payout confirmed.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from config import Config
from models import PaymentStatus, SettlementStatus, VerificationMethod
from services.settlement_errors import LedgerUnavailable, TransferTimeout, ValidationError
from tests.settlement_test_foundation import OTHER_WALLET


async def create_withdrawal(orchestrator, owner_id="user-1", amount="10"):
    result = await orchestrator.create_offramp_withdrawal(owner_id, amount, "APT", "HDFC-XXXX1234")
    return result["settlement"]["id"]


class TestCreateWithdrawal:

    @pytest.mark.asyncio
    async def test_withdrawal_quoted_with_deposit_instructions(self, orchestrator):
        result = await orchestrator.create_offramp_withdrawal(
            "user-1", "10", "APT", "HDFC-XXXX1234", wallet_address=OTHER_WALLET
        )

        settlement = result["settlement"]
        assert settlement["status"] == "withdrawal_requested"
        assert settlement["order_reference"].startswith("OFR-")
        assert Decimal(settlement["amount_fiat"]) == Decimal("100")
        assert Decimal(settlement["net_fiat"]) == Decimal("95")
        assert settlement["bank_account_ref"] == "HDFC-XXXX1234"
        instructions = result["deposit_instructions"]
        assert instructions["deposit_address"] == Config.OFFRAMP_DEPOSIT_ADDRESS
        assert instructions["amount"] == "10.00000000"
        assert instructions["network"] == "testnet"

    @pytest.mark.asyncio
    async def test_bank_account_required(self, orchestrator):
        with pytest.raises(ValidationError, match="bank_account_ref"):
            await orchestrator.create_offramp_withdrawal("user-1", "10", "APT", "  ")

    @pytest.mark.asyncio
    async def test_net_below_minimum_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.create_offramp_withdrawal("user-1", "0.9", "APT", "HDFC-XXXX1234")

    @pytest.mark.asyncio
    async def test_signer_address_used_when_no_deposit_address(self, orchestrator, signer):
        with patch.object(Config, "OFFRAMP_DEPOSIT_ADDRESS", None):
            result = await orchestrator.create_offramp_withdrawal("user-1", "10", "APT", "HDFC-XXXX1234")
        assert result["deposit_instructions"]["deposit_address"] == signer.address


class TestVerifyDeposit:

    @pytest.mark.asyncio
    async def test_ledger_confirmed_deposit(self, orchestrator, fake_ledger):
        record_id = await create_withdrawal(orchestrator)
        tx_hash = fake_ledger.add_deposit(sender=OTHER_WALLET)

        response = await orchestrator.verify_offramp_deposit(record_id, tx_hash, owner_id="user-1")

        record = response.record
        assert record.status == SettlementStatus.DEPOSIT_VERIFIED.value
        assert record.verification_method == VerificationMethod.LEDGER_CONFIRMED.value
        assert record.deposit_tx_hash == tx_hash
        assert record.record_metadata["deposit_sender"] == OTHER_WALLET
        assert record.record_metadata["deposit_ledger_version"] == "42"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tx_hash", ["", "0x123", "a" * 66, "0x" + "g" * 64])
    async def test_malformed_hash_rejected(self, orchestrator, tx_hash):
        record_id = await create_withdrawal(orchestrator)
        with pytest.raises(ValidationError, match="Invalid transaction hash"):
            await orchestrator.verify_offramp_deposit(record_id, tx_hash, owner_id="user-1")

    @pytest.mark.asyncio
    async def test_unreachable_ledger_rejected_without_demo_flag(self, orchestrator, fake_ledger):
        record_id = await create_withdrawal(orchestrator)
        fake_ledger.lookup_error = LedgerUnavailable("node unreachable")

        with pytest.raises(LedgerUnavailable):
            await orchestrator.verify_offramp_deposit(record_id, "0x" + "1" * 64, owner_id="user-1")
        assert (await orchestrator.store.get(record_id)).status == SettlementStatus.WITHDRAWAL_REQUESTED.value

    @pytest.mark.asyncio
    async def test_unknown_transaction_rejected_without_demo_flag(self, orchestrator):
        record_id = await create_withdrawal(orchestrator)
        with pytest.raises(LedgerUnavailable, match="not found"):
            await orchestrator.verify_offramp_deposit(record_id, "0x" + "2" * 64, owner_id="user-1")

    @pytest.mark.asyncio
    async def test_demo_acceptance_when_enabled(self, orchestrator, fake_ledger):
        orchestrator.deposit_verifier.allow_demo_acceptance = True
        record_id = await create_withdrawal(orchestrator)
        fake_ledger.lookup_error = TransferTimeout("lookup timed out")

        response = await orchestrator.verify_offramp_deposit(record_id, "0x" + "3" * 64, owner_id="user-1")

        record = response.record
        assert record.status == SettlementStatus.DEPOSIT_VERIFIED.value
        assert record.verification_method == VerificationMethod.DEMO_ACCEPTED.value
        assert "without ledger confirmation" in record.record_metadata["verification_note"]

    @pytest.mark.asyncio
    async def test_deposit_failed_on_ledger_rejected(self, orchestrator, fake_ledger):
        orchestrator.deposit_verifier.allow_demo_acceptance = True
        record_id = await create_withdrawal(orchestrator)
        tx_hash = fake_ledger.add_deposit(success=False)

        with pytest.raises(ValidationError, match="failed on the ledger"):
            await orchestrator.verify_offramp_deposit(record_id, tx_hash, owner_id="user-1")

    @pytest.mark.asyncio
    async def test_deposit_hash_cannot_back_two_withdrawals(self, orchestrator, fake_ledger):
        first = await create_withdrawal(orchestrator)
        second = await create_withdrawal(orchestrator)
        tx_hash = fake_ledger.add_deposit()
        await orchestrator.verify_offramp_deposit(first, tx_hash, owner_id="user-1")

        with pytest.raises(ValidationError, match="already been used"):
            await orchestrator.verify_offramp_deposit(second, tx_hash.upper().replace("0X", "0x"), owner_id="user-1")
        assert (await orchestrator.store.get(second)).status == SettlementStatus.WITHDRAWAL_REQUESTED.value

    @pytest.mark.asyncio
    async def test_deposit_only_verified_once(self, orchestrator, fake_ledger):
        record_id = await create_withdrawal(orchestrator)
        await orchestrator.verify_offramp_deposit(record_id, fake_ledger.add_deposit(), owner_id="user-1")

        with pytest.raises(ValidationError):
            await orchestrator.verify_offramp_deposit(record_id, fake_ledger.add_deposit(), owner_id="user-1")

    @pytest.mark.asyncio
    async def test_deposit_to_another_address_rejected(self, orchestrator, fake_ledger):
        record_id = await create_withdrawal(orchestrator)
        tx_hash = fake_ledger.add_deposit(recipient=OTHER_WALLET)

        with pytest.raises(ValidationError, match="deposit address"):
            await orchestrator.verify_offramp_deposit(record_id, tx_hash, owner_id="user-1")
        assert (await orchestrator.store.get(record_id)).status == SettlementStatus.WITHDRAWAL_REQUESTED.value

    @pytest.mark.asyncio
    async def test_short_deposit_rejected(self, orchestrator, fake_ledger):
        record_id = await create_withdrawal(orchestrator)
        tx_hash = fake_ledger.add_deposit(base_units=999_999_999)

        with pytest.raises(ValidationError, match="less than the withdrawal amount"):
            await orchestrator.verify_offramp_deposit(record_id, tx_hash, owner_id="user-1")

    @pytest.mark.asyncio
    async def test_non_transfer_transaction_rejected(self, orchestrator, fake_ledger):
        record_id = await create_withdrawal(orchestrator)
        tx_hash = fake_ledger.add_deposit(function="0x1::account::rotate_authentication_key")

        with pytest.raises(ValidationError, match="not a token transfer"):
            await orchestrator.verify_offramp_deposit(record_id, tx_hash, owner_id="user-1")

    @pytest.mark.asyncio
    async def test_recipient_compared_without_leading_zeros_or_case(self, orchestrator, fake_ledger):
        record_id = await create_withdrawal(orchestrator)
        deposit_address = (await orchestrator.store.get(record_id)).record_metadata["deposit_address"]
        tx_hash = fake_ledger.add_deposit(recipient=deposit_address.upper().replace("0X", "0x000"))

        response = await orchestrator.verify_offramp_deposit(record_id, tx_hash, owner_id="user-1")

        assert response.record.record_metadata["deposit_amount_base_units"] == "1000000000"


class TestPayout:

    async def _verified(self, orchestrator, fake_ledger):
        record_id = await create_withdrawal(orchestrator)
        await orchestrator.verify_offramp_deposit(record_id, fake_ledger.add_deposit(), owner_id="user-1")
        return record_id

    @pytest.mark.asyncio
    async def test_payout_job_initiates_verified_withdrawals(self, orchestrator, fake_ledger):
        record_id = await self._verified(orchestrator, fake_ledger)

        stats = await orchestrator.initiate_pending_payouts()

        assert stats == {"initiated": 1, "failed": 0, "skipped": 0}
        record = await orchestrator.store.get(record_id)
        assert record.status == SettlementStatus.PAYOUT_INITIATED.value
        assert record.payout_reference.startswith("pout_")
        assert record.payout_attempts == 1
        assert record.record_metadata["expected_payout_completion"]

        # Nothing left to do on the next run
        assert (await orchestrator.initiate_pending_payouts())["initiated"] == 0

    @pytest.mark.asyncio
    async def test_confirm_payout_completes(self, orchestrator, fake_ledger):
        record_id = await self._verified(orchestrator, fake_ledger)
        await orchestrator.initiate_pending_payouts()

        response = await orchestrator.confirm_offramp_payout(record_id, owner_id="user-1")

        record = response.record
        assert record.status == SettlementStatus.COMPLETED.value
        assert record.payment_status == PaymentStatus.SUCCESS.value
        assert record.settled_at is not None
        assert response.extra["payout"]["payment_id"].startswith("pay_")
        history = await orchestrator.store.history(record_id)
        assert [h.to_status for h in history] == [
            "withdrawal_requested", "deposit_verified", "payout_initiated", "completed"
        ]

    @pytest.mark.asyncio
    async def test_confirm_initiates_when_job_has_not_run(self, orchestrator, fake_ledger):
        record_id = await self._verified(orchestrator, fake_ledger)

        response = await orchestrator.confirm_offramp_payout(record_id, owner_id="user-1")

        assert response.record.status == SettlementStatus.COMPLETED.value
        assert response.record.payout_reference.startswith("pout_")

    @pytest.mark.asyncio
    async def test_confirm_before_deposit_rejected(self, orchestrator):
        record_id = await create_withdrawal(orchestrator)
        with pytest.raises(ValidationError, match="must be verified"):
            await orchestrator.confirm_offramp_payout(record_id, owner_id="user-1")

    @pytest.mark.asyncio
    async def test_provider_failure_counts_attempts(self, orchestrator, fake_ledger):
        record_id = await self._verified(orchestrator, fake_ledger)
        orchestrator.payout_service.provider.initiate = AsyncMock(side_effect=RuntimeError("bank rail down"))

        stats = await orchestrator.initiate_pending_payouts()

        assert stats["failed"] == 1
        record = await orchestrator.store.get(record_id)
        assert record.status == SettlementStatus.DEPOSIT_VERIFIED.value
        assert record.payout_attempts == 1
        assert record.failure_code == "PAYOUT_FAILED"

    @pytest.mark.asyncio
    async def test_attempts_bounded(self, orchestrator, fake_ledger):
        record_id = await self._verified(orchestrator, fake_ledger)
        orchestrator.payout_service.provider.initiate = AsyncMock(side_effect=RuntimeError("bank rail down"))

        with patch.object(Config, "PAYOUT_MAX_ATTEMPTS", 2):
            for _ in range(3):
                await orchestrator.initiate_pending_payouts()
            stats = await orchestrator.initiate_pending_payouts()

        assert stats == {"initiated": 0, "failed": 0, "skipped": 1}
        assert (await orchestrator.store.get(record_id)).payout_attempts == 2


class TestCancelWithdrawal:

    @pytest.mark.asyncio
    async def test_cancel_before_deposit(self, orchestrator):
        record_id = await create_withdrawal(orchestrator)
        response = await orchestrator.cancel_settlement(record_id, owner_id="user-1")
        assert response.record.status == SettlementStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_cancel_after_deposit_rejected(self, orchestrator, fake_ledger):
        record_id = await create_withdrawal(orchestrator)
        await orchestrator.verify_offramp_deposit(record_id, fake_ledger.add_deposit(), owner_id="user-1")

        with pytest.raises(ValidationError, match="Cannot cancel"):
            await orchestrator.cancel_settlement(record_id, owner_id="user-1")
