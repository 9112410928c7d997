"""
Ledger client, signer and audit logger unit tests (no network).
"""
import logging
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from services.ledger_client import LedgerClient, from_base_units, to_base_units
from services.ledger_signer import LedgerSigner
from services.settlement_errors import SimulationRejected, TransactionFailed, TransferTimeout, ValidationError
from utils.settlement_audit_logger import SettlementAuditLogger, SettlementEventType
from tests.settlement_test_foundation import WALLET

KNOWN_KEY = "0x" + "11" * 32


class TestBaseUnits:

    def test_round_trip(self):
        assert to_base_units(Decimal("1.5"), 8) == 150000000
        assert from_base_units(150000000, 8) == Decimal("1.5")

    def test_sub_unit_dust_rejected(self):
        with pytest.raises(ValidationError):
            to_base_units(Decimal("0.000000001"), 8)


class TestLedgerSigner:

    def test_address_is_deterministic(self):
        first = LedgerSigner(KNOWN_KEY)
        second = LedgerSigner(KNOWN_KEY[2:])
        assert first.address == second.address
        assert len(first.address) == 66
        assert first.address.startswith("0x")

    def test_signature_verifies(self):
        signer = LedgerSigner.generate()
        signature = signer.sign(b"transfer")
        public_key = Ed25519PublicKey.from_public_bytes(signer.public_key_bytes)
        public_key.verify(bytes.fromhex(signature[2:]), b"transfer")

    def test_bad_key_length(self):
        with pytest.raises(ValueError):
            LedgerSigner("0x1234")


class TestLedgerClient:

    @pytest.mark.asyncio
    async def test_missing_account_has_zero_balance(self):
        client = LedgerClient(node_url="http://ledger.test")
        with patch.object(client, "_request", AsyncMock(return_value=None)):
            assert await client.get_balance(WALLET, "APT") == Decimal("0")

    @pytest.mark.asyncio
    async def test_balance_converted_from_base_units(self):
        client = LedgerClient(node_url="http://ledger.test")
        with patch.object(client, "_request", AsyncMock(return_value="250000000")) as request:
            assert await client.get_balance(WALLET, "APT") == Decimal("2.5")
        assert "0x1::aptos_coin::AptosCoin" in request.call_args.args[1]

    @pytest.mark.asyncio
    async def test_unknown_transaction(self):
        client = LedgerClient(node_url="http://ledger.test")
        with patch.object(client, "_request", AsyncMock(return_value=None)):
            tx = await client.get_transaction("0x" + "1" * 64)
        assert tx.found is False

    @pytest.mark.asyncio
    async def test_committed_transaction_normalized(self):
        client = LedgerClient(node_url="http://ledger.test")
        data = {"type": "user_transaction", "hash": "0xabc", "success": True, "vm_status": "Executed successfully",
                "sender": WALLET, "gas_used": "9", "gas_unit_price": "100", "version": "77"}
        with patch.object(client, "_request", AsyncMock(return_value=data)):
            tx = await client.get_transaction("0xabc")
        assert tx.found and tx.success and not tx.pending
        assert tx.gas_used == 9
        assert tx.version == "77"

    @pytest.mark.asyncio
    async def test_build_transfer_payload(self):
        client = LedgerClient(node_url="http://ledger.test")
        signer = LedgerSigner(KNOWN_KEY)
        responses = {"/accounts/" + signer.address: {"sequence_number": "7"}, "/estimate_gas_price": {"gas_estimate": 150}}

        async def fake_request(method, endpoint, **kwargs):
            return responses[endpoint]

        with patch.object(client, "_request", side_effect=fake_request):
            transaction = await client.build_transfer(signer, WALLET, Decimal("1.25"), "APT")

        assert transaction["sequence_number"] == "7"
        assert transaction["gas_unit_price"] == "150"
        assert transaction["payload"]["function"] == "0x1::aptos_account::transfer"
        assert transaction["payload"]["arguments"] == [WALLET, "125000000"]

    @pytest.mark.asyncio
    async def test_build_transfer_requires_transfer_path(self):
        client = LedgerClient(node_url="http://ledger.test")
        with pytest.raises(ValidationError):
            await client.build_transfer(LedgerSigner(KNOWN_KEY), WALLET, Decimal("1"), "USDC")

    @pytest.mark.asyncio
    async def test_failed_simulation_rejected(self):
        client = LedgerClient(node_url="http://ledger.test")
        with patch.object(client, "_request", AsyncMock(return_value=[{"success": False, "vm_status": "ABORTED"}])):
            with pytest.raises(SimulationRejected, match="ABORTED"):
                await client.simulate(LedgerSigner(KNOWN_KEY), {"sender": "0x1"})

    @pytest.mark.asyncio
    async def test_wait_for_failed_or_pending_transaction(self):
        client = LedgerClient(node_url="http://ledger.test")
        with patch.object(client, "_request", AsyncMock(return_value={"success": False, "vm_status": "OUT_OF_GAS"})):
            with pytest.raises(TransactionFailed):
                await client.wait_for_transaction("0xabc")
        with patch.object(client, "_request", AsyncMock(return_value={"type": "pending_transaction"})):
            with pytest.raises(TransferTimeout):
                await client.wait_for_transaction("0xabc")


class TestAuditLogger:

    def test_sensitive_fields_redacted(self, caplog):
        audit = SettlementAuditLogger()
        with caplog.at_level(logging.INFO, logger="settlement.audit"):
            audit.log_event(
                SettlementEventType.WEBHOOK_RECEIVED,
                owner_id="gateway",
                additional_data={"signature": "deadbeef", "amount": Decimal("1.5"), "event": "payment.captured"},
            )

        payload = caplog.records[-1].audit
        assert payload["data"]["signature"] == "[REDACTED]"
        assert payload["data"]["amount"] == "1.5"
        assert payload["event_type"] == "webhook_received"
