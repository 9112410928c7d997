"""
Ledger Client Adapter

Thin aiohttp wrapper over the ledger node's REST API: balances, gas price,
transfer build/simulate/sign/submit, finality wait and transaction lookup.
Transport problems surface as LedgerUnavailable, request timeouts as
TransferTimeout.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Any, List, Optional

import aiohttp

from config import Config
from services.ledger_signer import LedgerSigner
from services.settlement_errors import (
    LedgerUnavailable, SimulationRejected, TransactionFailed, TransferTimeout, ValidationError
)

logger = logging.getLogger(__name__)


@dataclass
class LedgerTransaction:
    """Normalized view of a ledger transaction lookup"""
    hash: str
    found: bool
    pending: bool = False
    success: bool = False
    vm_status: Optional[str] = None
    sender: Optional[str] = None
    gas_used: Optional[int] = None
    gas_unit_price: Optional[int] = None
    version: Optional[str] = None
    function: Optional[str] = None
    arguments: List[Any] = field(default_factory=list)
    timestamp: Optional[str] = None


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a token amount to integer base units, rejecting dust below one unit"""
    scaled = Decimal(amount) * (Decimal(10) ** decimals)
    if scaled != scaled.to_integral_value():
        raise ValidationError(f"Amount {amount} has more than {decimals} decimal places")
    return int(scaled)


def from_base_units(value: int, decimals: int) -> Decimal:
    return Decimal(int(value)) / (Decimal(10) ** decimals)


class LedgerClient:
    """Async REST client for the ledger node"""

    def __init__(self, node_url: Optional[str] = None, network: Optional[str] = None,
                 request_timeout: Optional[float] = None):
        self.node_url = (node_url or Config.LEDGER_NODE_URL).rstrip("/")
        self.network = network or Config.LEDGER_NETWORK
        self.request_timeout = request_timeout or Config.LEDGER_REQUEST_TIMEOUT_SECONDS
        self._session: Optional[aiohttp.ClientSession] = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if Config.LEDGER_API_KEY:
            headers["Authorization"] = f"Bearer {Config.LEDGER_API_KEY}"
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers())
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: Any = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        allow_not_found: bool = False,
    ) -> Any:
        url = f"{self.node_url}/{endpoint.lstrip('/')}"
        session = await self._get_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.request_timeout)
        try:
            async with session.request(method, url, json=json_data, params=params, timeout=client_timeout) as response:
                if response.status == 404 and allow_not_found:
                    return None
                try:
                    body = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    body = {"message": await response.text()}

                if response.status in (200, 201, 202):
                    return body

                message = body.get("message") if isinstance(body, dict) else str(body)
                if response.status == 400 and isinstance(body, dict) and "vm_error" in str(body.get("error_code", "")):
                    raise SimulationRejected(f"Ledger rejected transaction: {message}")
                logger.error(f"❌ LEDGER_API: {method} {endpoint} -> HTTP {response.status}: {message}")
                raise LedgerUnavailable(f"Ledger node returned HTTP {response.status}: {message}")
        except asyncio.TimeoutError:
            logger.error(f"⏰ LEDGER_API: {method} {endpoint} timed out")
            raise TransferTimeout(f"Ledger request {endpoint} timed out")
        except aiohttp.ClientError as e:
            logger.error(f"❌ LEDGER_API: {method} {endpoint} failed: {e}")
            raise LedgerUnavailable(f"Ledger node unreachable: {e}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_ledger_info(self) -> Dict[str, Any]:
        return await self._request("GET", "/")

    async def get_balance(self, address: str, asset_type: str) -> Decimal:
        """Balance of an address in whole tokens"""
        asset = Config.asset_config(asset_type)
        coin_type = asset.get("coin_type")
        if not coin_type:
            raise ValidationError(f"{asset_type} has no on-ledger coin type")
        value = await self._request(
            "GET", f"/accounts/{address}/balance/{coin_type}", allow_not_found=True
        )
        if value is None:
            # Account not created yet
            return Decimal("0")
        return from_base_units(int(value), int(asset.get("decimals", 8)))

    async def get_sequence_number(self, address: str) -> int:
        account = await self._request("GET", f"/accounts/{address}")
        return int(account["sequence_number"])

    async def estimate_gas_price(self) -> int:
        data = await self._request("GET", "/estimate_gas_price")
        return int(data.get("gas_estimate") or Config.GAS_ESTIMATE_FALLBACK_UNIT_PRICE)

    async def get_transaction(self, tx_hash: str) -> LedgerTransaction:
        """Look up a transaction by hash; found=False when the node does not know it"""
        data = await self._request("GET", f"/transactions/by_hash/{tx_hash}", allow_not_found=True)
        if data is None:
            return LedgerTransaction(hash=tx_hash, found=False)
        return self._normalize(tx_hash, data)

    @staticmethod
    def _normalize(tx_hash: str, data: Dict[str, Any]) -> LedgerTransaction:
        pending = data.get("type") == "pending_transaction"
        payload = data.get("payload") or {}
        return LedgerTransaction(
            hash=data.get("hash", tx_hash),
            found=True,
            pending=pending,
            success=bool(data.get("success")) and not pending,
            vm_status=data.get("vm_status"),
            sender=data.get("sender"),
            gas_used=int(data["gas_used"]) if data.get("gas_used") is not None else None,
            gas_unit_price=int(data["gas_unit_price"]) if data.get("gas_unit_price") is not None else None,
            version=data.get("version"),
            function=payload.get("function"),
            arguments=list(payload.get("arguments") or []),
            timestamp=data.get("timestamp"),
        )

    def explorer_url(self, tx_hash: str) -> str:
        return f"{Config.LEDGER_EXPLORER_URL}/{tx_hash}?network={self.network}"

    # ------------------------------------------------------------------
    # Transfer pipeline
    # ------------------------------------------------------------------

    async def build_transfer(
        self, signer: LedgerSigner, recipient: str, amount: Decimal, asset_type: str
    ) -> Dict[str, Any]:
        """Unsigned transfer transaction for the asset's transfer path"""
        asset = Config.asset_config(asset_type)
        transfer_path = asset.get("transfer_path")
        if not transfer_path:
            raise ValidationError(f"{asset_type} has no on-ledger transfer path")
        base_units = to_base_units(amount, int(asset.get("decimals", 8)))
        sequence_number = await self.get_sequence_number(signer.address)
        gas_unit_price = await self.estimate_gas_price()
        return {
            "sender": signer.address,
            "sequence_number": str(sequence_number),
            "max_gas_amount": str(Config.LEDGER_MAX_GAS_AMOUNT),
            "gas_unit_price": str(gas_unit_price),
            "expiration_timestamp_secs": str(int(time.time()) + Config.LEDGER_TX_EXPIRATION_SECONDS),
            "payload": {
                "type": "entry_function_payload",
                "function": transfer_path,
                "type_arguments": [],
                "arguments": [recipient, str(base_units)],
            },
        }

    async def simulate(self, signer: LedgerSigner, transaction: Dict[str, Any]) -> Dict[str, Any]:
        """Dry-run a transaction; raises SimulationRejected if it would fail"""
        body = dict(transaction, signature=signer.simulation_signature_payload())
        results = await self._request("POST", "/transactions/simulate", json_data=body)
        result = results[0] if isinstance(results, list) and results else (results or {})
        if not result.get("success"):
            vm_status = result.get("vm_status", "unknown")
            logger.warning(f"🚫 LEDGER_SIMULATION: Rejected: {vm_status}")
            raise SimulationRejected(f"Transaction simulation failed: {vm_status}")
        return result

    async def sign_and_submit(self, signer: LedgerSigner, transaction: Dict[str, Any]) -> str:
        """Sign and submit, returning the pending transaction hash"""
        signing_message = await self._request(
            "POST", "/transactions/encode_submission", json_data=transaction
        )
        body = dict(transaction, signature=signer.signature_payload(signing_message))
        pending = await self._request("POST", "/transactions", json_data=body)
        tx_hash = pending.get("hash")
        if not tx_hash:
            raise LedgerUnavailable("Ledger node accepted the submission without returning a hash")
        logger.info(f"📤 LEDGER_SUBMIT: {tx_hash} from {signer.address}")
        return tx_hash

    async def wait_for_transaction(self, tx_hash: str, timeout: Optional[float] = None) -> LedgerTransaction:
        """Wait for finality; raises TransactionFailed if the committed txn did not succeed"""
        data = await self._request(
            "GET", f"/transactions/wait_by_hash/{tx_hash}",
            timeout=timeout or Config.FINALITY_TIMEOUT_SECONDS,
        )
        tx = self._normalize(tx_hash, data)
        if tx.pending:
            raise TransferTimeout(f"Transaction {tx_hash} still pending after finality wait")
        if not tx.success:
            raise TransactionFailed(f"Transaction {tx_hash} failed: {tx.vm_status}")
        return tx


_ledger_client: Optional[LedgerClient] = None


def get_ledger_client() -> LedgerClient:
    global _ledger_client
    if _ledger_client is None:
        _ledger_client = LedgerClient()
    return _ledger_client
