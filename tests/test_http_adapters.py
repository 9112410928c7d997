"""
HTTP adapters against canned aiohttp responses: status and error mapping for
the ledger node, payment gateway and funding source clients.
"""
import asyncio
import json
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from config import Config
from services.funding_client import FundingClient
from services.ledger_client import LedgerClient
from services.ledger_signer import LedgerSigner
from services.payment_gateway_client import PaymentGatewayClient
from services.settlement_errors import (
    GatewayError, LedgerUnavailable, SimulationRejected, TransferTimeout
)
from tests.settlement_test_foundation import WALLET

TX_HASH = "0x" + "4" * 64


class CannedResponse:
    def __init__(self, status, body=None, text=None):
        self.status = status
        self._body = body
        self._text = text

    async def json(self, content_type=None):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body

    async def text(self):
        return self._text if self._text is not None else json.dumps(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class CannedSession:
    """Hands out queued responses and records every call"""

    closed = False

    def __init__(self, *responses, error=None):
        self.responses = list(responses)
        self.error = error
        self.calls = []

    def _respond(self, method, url, **kwargs):
        self.calls.append(SimpleNamespace(method=method, url=url, kwargs=kwargs))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)

    def request(self, method, url, **kwargs):
        return self._respond(method, url, **kwargs)

    def post(self, url, **kwargs):
        return self._respond("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._respond("GET", url, **kwargs)

    async def close(self):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


def ledger_with(session):
    client = LedgerClient(node_url="http://ledger.test", network="testnet")
    client._get_session = AsyncMock(return_value=session)
    return client


class TestLedgerRequestMapping:

    @pytest.mark.asyncio
    async def test_unknown_transaction_is_not_found(self):
        session = CannedSession(CannedResponse(404, {"error_code": "transaction_not_found"}))

        tx = await ledger_with(session).get_transaction(TX_HASH)

        assert tx.found is False
        assert session.calls[0].method == "GET"
        assert session.calls[0].url == f"http://ledger.test/transactions/by_hash/{TX_HASH}"

    @pytest.mark.asyncio
    async def test_committed_transfer_payload_is_exposed(self):
        session = CannedSession(CannedResponse(200, {
            "type": "user_transaction", "hash": TX_HASH, "success": True, "vm_status": "Executed successfully",
            "sender": WALLET, "version": "9", "timestamp": "1700000000000000",
            "payload": {"function": "0x1::aptos_account::transfer", "arguments": ["0xd", "100"]},
        }))

        tx = await ledger_with(session).get_transaction(TX_HASH)

        assert tx.function == "0x1::aptos_account::transfer"
        assert tx.arguments == ["0xd", "100"]
        assert tx.timestamp == "1700000000000000"

    @pytest.mark.asyncio
    async def test_vm_error_on_submit_is_simulation_rejected(self):
        signer = LedgerSigner.generate()
        session = CannedSession(
            CannedResponse(200, "0x" + "ab" * 16),
            CannedResponse(400, {"error_code": "vm_error", "message": "SEQUENCE_NUMBER_TOO_OLD"}),
        )

        with pytest.raises(SimulationRejected, match="SEQUENCE_NUMBER_TOO_OLD"):
            await ledger_with(session).sign_and_submit(signer, {"sender": signer.address})

        assert [call.url for call in session.calls] == [
            "http://ledger.test/transactions/encode_submission",
            "http://ledger.test/transactions",
        ]
        assert "signature" in session.calls[1].kwargs["json"]

    @pytest.mark.asyncio
    async def test_server_error_is_ledger_unavailable(self):
        session = CannedSession(CannedResponse(503, text="upstream overloaded"))

        with pytest.raises(LedgerUnavailable, match="HTTP 503: upstream overloaded"):
            await ledger_with(session).get_ledger_info()

    @pytest.mark.asyncio
    async def test_missing_account_reads_as_zero_balance(self):
        session = CannedSession(CannedResponse(404, {"error_code": "account_not_found"}))
        assert await ledger_with(session).get_balance(WALLET, "APT") == Decimal("0")

    @pytest.mark.asyncio
    async def test_timeout_is_transfer_timeout(self):
        session = CannedSession(error=asyncio.TimeoutError())
        with pytest.raises(TransferTimeout):
            await ledger_with(session).estimate_gas_price()

    @pytest.mark.asyncio
    async def test_connection_error_is_ledger_unavailable(self):
        session = CannedSession(error=aiohttp.ClientConnectionError("connection refused"))
        with pytest.raises(LedgerUnavailable, match="unreachable"):
            await ledger_with(session).get_ledger_info()


class TestPaymentGatewayClient:

    def client(self):
        return PaymentGatewayClient(base_url="http://gateway.test/v1", key_id="rzp_key", key_secret="rzp_secret")

    @pytest.mark.asyncio
    async def test_order_created_in_minor_units(self):
        session = CannedSession(CannedResponse(200, {"id": "order_abc", "status": "created"}))

        with patch("aiohttp.ClientSession", return_value=session):
            order = await self.client().create_order(Decimal("101.50"), "INR", {"owner_id": "user-1", "skip": None})

        assert order["id"] == "order_abc"
        call = session.calls[0]
        assert call.url == "http://gateway.test/v1/orders"
        assert call.kwargs["json"]["amount"] == 10150
        assert call.kwargs["json"]["notes"] == {"owner_id": "user-1"}
        assert call.kwargs["auth"].login == "rzp_key"

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        session = CannedSession(CannedResponse(401, {"error": {"code": "BAD_REQUEST_ERROR"}}))

        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(GatewayError, match="HTTP 401"):
                await self.client().create_order(Decimal("100"), "INR", {})

    @pytest.mark.asyncio
    async def test_timeout_is_gateway_error(self):
        session = CannedSession(error=asyncio.TimeoutError())

        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(GatewayError, match="timed out"):
                await self.client().create_order(Decimal("100"), "INR", {})

    @pytest.mark.asyncio
    async def test_fetch_order(self):
        session = CannedSession(
            CannedResponse(200, {"id": "order_abc", "status": "paid", "amount": 10150, "currency": "INR"}),
            CannedResponse(400, {"error": {"description": "The id provided does not exist"}}),
        )

        with patch("aiohttp.ClientSession", return_value=session):
            order = await self.client().fetch_order("order_abc")
            with pytest.raises(GatewayError):
                await self.client().fetch_order("order_missing")

        assert order["status"] == "paid"
        assert order["amount"] == 10150
        assert session.calls[0].method == "GET"
        assert session.calls[0].url == "http://gateway.test/v1/orders/order_abc"


class TestFundingClient:

    @pytest.fixture(autouse=True)
    def funding_enabled(self):
        with patch.object(Config, "FUNDING_ENABLED", True):
            yield

    @pytest.mark.asyncio
    async def test_top_up_requested_in_base_units(self):
        session = CannedSession(CannedResponse(200, [TX_HASH]))

        with patch("aiohttp.ClientSession", return_value=session):
            hashes = await FundingClient(funding_url="http://faucet.test").request_top_up(WALLET, Decimal("18.02"))

        assert hashes == [TX_HASH]
        call = session.calls[0]
        assert call.url == "http://faucet.test/mint"
        assert call.kwargs["params"] == {"amount": "1802000000", "address": WALLET}

    @pytest.mark.asyncio
    async def test_hashes_read_from_object_body(self):
        session = CannedSession(CannedResponse(202, {"txn_hashes": [TX_HASH]}))

        with patch("aiohttp.ClientSession", return_value=session):
            assert await FundingClient(funding_url="http://faucet.test").request_top_up(WALLET, Decimal("10")) == [TX_HASH]

    @pytest.mark.asyncio
    async def test_error_status_is_ledger_unavailable(self):
        session = CannedSession(CannedResponse(500, text="faucet exhausted"))

        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(LedgerUnavailable, match="HTTP 500"):
                await FundingClient(funding_url="http://faucet.test").request_top_up(WALLET, Decimal("10"))
