"""
Transfer strategies.

RealTransferStrategy moves value on the ledger (build, simulate, sign,
submit, wait for finality). SimulatedTransferStrategy stands in for assets
that have no on-ledger transfer path and is always flagged simulated.
The strategy is chosen from asset configuration before any work starts.
"""

import asyncio
import logging
import random
import secrets
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Dict, Optional

from config import Config
from services.ledger_client import LedgerClient
from services.ledger_signer import LedgerSigner
from services.settlement_errors import LedgerUnavailable, TransferTimeout, ValidationError

logger = logging.getLogger(__name__)


async def run_step(awaitable: Awaitable, seconds: float, step: str) -> Any:
    """Await with a hard deadline; expiry becomes TransferTimeout"""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        logger.error(f"⏰ TRANSFER_TIMEOUT: step '{step}' exceeded {seconds}s")
        raise TransferTimeout(f"Transfer step '{step}' timed out after {seconds}s")


class SubmissionGuard:
    """
    Hooks around the point of no return in a real transfer.

    before_submit runs immediately before signing and may raise to abort;
    submitted runs as soon as the ledger has accepted the transaction.
    """

    async def before_submit(self):
        return None

    async def submitted(self, tx_hash: str, expires_at: datetime):
        return None


@dataclass
class TransferRequest:
    record_reference: str
    recipient: str
    amount: Decimal
    asset_type: str
    guard: Optional[SubmissionGuard] = None


@dataclass
class TransferResult:
    hash: str
    explorer_reference: Optional[str]
    simulated: bool
    amount: Decimal
    asset_type: str
    recipient: str
    sender: Optional[str]
    network: str
    gas_used: Optional[int] = None
    gas_unit_price: Optional[int] = None
    reconciled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount)
        return data


def transaction_expiry(transaction: Dict[str, Any]) -> datetime:
    """Time after which an uncommitted transaction can no longer land"""
    expires = transaction.get("expiration_timestamp_secs")
    seconds = int(expires) if expires else int(time.time()) + Config.LEDGER_TX_EXPIRATION_SECONDS
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class TransferStrategy:
    """Base strategy"""
    name = "base"
    needs_signer_balance = False

    async def execute(self, request: TransferRequest) -> TransferResult:
        raise NotImplementedError


class RealTransferStrategy(TransferStrategy):
    """On-ledger transfer from the service signer"""
    name = "real"
    needs_signer_balance = True

    def __init__(self, ledger_client: LedgerClient, signer: LedgerSigner):
        self.ledger_client = ledger_client
        self.signer = signer

    async def execute(self, request: TransferRequest) -> TransferResult:
        request_timeout = Config.LEDGER_REQUEST_TIMEOUT_SECONDS

        transaction = await run_step(
            self.ledger_client.build_transfer(self.signer, request.recipient, request.amount, request.asset_type),
            request_timeout, "build",
        )
        simulation = await run_step(
            self.ledger_client.simulate(self.signer, transaction), request_timeout, "simulate"
        )
        logger.info(
            f"🧪 TRANSFER_SIMULATION: {request.record_reference} ok "
            f"(gas_used={simulation.get('gas_used')})"
        )
        guard = request.guard or SubmissionGuard()
        await guard.before_submit()
        tx_hash = await run_step(
            self.ledger_client.sign_and_submit(self.signer, transaction), request_timeout, "submit"
        )
        await guard.submitted(tx_hash, transaction_expiry(transaction))
        committed = await run_step(
            self.ledger_client.wait_for_transaction(tx_hash),
            Config.FINALITY_TIMEOUT_SECONDS, "finality",
        )
        return TransferResult(
            hash=tx_hash,
            explorer_reference=self.ledger_client.explorer_url(tx_hash),
            simulated=False,
            amount=request.amount,
            asset_type=request.asset_type,
            recipient=request.recipient,
            sender=self.signer.address,
            network=self.ledger_client.network,
            gas_used=committed.gas_used,
            gas_unit_price=committed.gas_unit_price,
        )


class SimulatedTransferStrategy(TransferStrategy):
    """Synthesized transfer for assets without an on-ledger path"""
    name = "simulated"
    needs_signer_balance = False

    def __init__(self, network: Optional[str] = None,
                 min_delay: Optional[float] = None, max_delay: Optional[float] = None):
        self.network = network or Config.LEDGER_NETWORK
        self.min_delay = Config.SIMULATED_TRANSFER_MIN_DELAY if min_delay is None else min_delay
        self.max_delay = Config.SIMULATED_TRANSFER_MAX_DELAY if max_delay is None else max_delay

    async def execute(self, request: TransferRequest) -> TransferResult:
        delay = random.uniform(self.min_delay, self.max_delay)
        await run_step(asyncio.sleep(delay), self.max_delay + Config.LEDGER_REQUEST_TIMEOUT_SECONDS, "simulated_delay")
        tx_hash = "0x" + secrets.token_hex(32)
        logger.warning(
            f"🎭 SIMULATED_TRANSFER: {request.record_reference} {request.amount} {request.asset_type} "
            f"-> {request.recipient} ({tx_hash})"
        )
        return TransferResult(
            hash=tx_hash,
            explorer_reference=None,
            simulated=True,
            amount=request.amount,
            asset_type=request.asset_type,
            recipient=request.recipient,
            sender=None,
            network=self.network,
        )


def select_strategy(asset_type: str, ledger_client: LedgerClient,
                    signer: Optional[LedgerSigner]) -> TransferStrategy:
    """Real strategy when the asset has a transfer path, simulated otherwise"""
    asset = Config.asset_config(asset_type)
    if not asset:
        raise ValidationError(f"Unsupported asset type: {asset_type}")
    if asset.get("transfer_path"):
        if signer is None:
            raise LedgerUnavailable("No signer configured for on-ledger transfers")
        return RealTransferStrategy(ledger_client, signer)
    return SimulatedTransferStrategy(network=ledger_client.network)
