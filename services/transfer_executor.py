"""
Transfer Executor

Delivers the quoted token amount of a verified on-ramp record to its wallet.
Picks the strategy up front, tops up the signer when the real strategy is
short of balance, and serializes all signer work through SignerWorkQueue
and, across worker processes, the signer lease. A record that already has a
submitted transaction is reconciled against the ledger before anything new
is signed. Persisting the outcome is left to the orchestrator.
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from config import Config
from models import SettlementRecord
from services.funding_client import FundingClient
from services.ledger_client import LedgerClient
from services.ledger_signer import LedgerSigner
from services.settlement_errors import InsufficientBalance, TransferTimeout
from services.signer_queue import SignerWorkQueue
from services.transfer_strategies import (
    SubmissionGuard, TransferRequest, TransferResult, TransferStrategy, select_strategy, run_step
)
from utils.signer_lease import SignerLease

logger = logging.getLogger(__name__)


class TransferExecutor:
    """Executes on-ramp transfers"""

    def __init__(
        self,
        ledger_client: LedgerClient,
        signer: Optional[LedgerSigner],
        funding_client: Optional[FundingClient] = None,
        signer_queue: Optional[SignerWorkQueue] = None,
        signer_lease: Optional[SignerLease] = None,
    ):
        self.ledger_client = ledger_client
        self.signer = signer
        self.funding_client = funding_client or FundingClient()
        self.signer_queue = signer_queue or SignerWorkQueue()
        self.signer_lease = signer_lease

    def strategy_for(self, asset_type: str) -> TransferStrategy:
        return select_strategy(asset_type, self.ledger_client, self.signer)

    async def execute(self, record: SettlementRecord, guard: Optional[SubmissionGuard] = None) -> TransferResult:
        if record.pending_transfer_hash:
            reconciled = await self.reconcile_pending(record)
            if reconciled is not None:
                return reconciled

        request = TransferRequest(
            record_reference=record.order_reference,
            recipient=record.wallet_address,
            amount=Decimal(record.amount_token),
            asset_type=record.asset_type,
            guard=guard,
        )
        strategy = self.strategy_for(record.asset_type)
        logger.info(
            f"🚀 TRANSFER_START: {request.record_reference} {request.amount} {request.asset_type} "
            f"-> {request.recipient} via {strategy.name}"
        )

        if not strategy.needs_signer_balance:
            result = await strategy.execute(request)
        else:
            async def job():
                await self.ensure_balance(request.amount, request.asset_type)
                return await strategy.execute(request)

            async def leased_job():
                async with self.signer_lease.hold(self.signer.address):
                    return await job()

            result = await self.signer_queue.submit(
                self.signer.address, job if self.signer_lease is None else leased_job, label=request.record_reference
            )

        logger.info(
            f"✅ TRANSFER_DONE: {request.record_reference} hash={result.hash} simulated={result.simulated}"
        )
        return result

    async def reconcile_pending(self, record: SettlementRecord) -> Optional[TransferResult]:
        """
        Resolve a transaction submitted by an earlier attempt.

        Returns a result when it committed successfully, None when it failed
        on the ledger or expired unseen (a new submission is safe), and raises
        TransferTimeout while it could still land.
        """
        tx_hash = record.pending_transfer_hash
        tx = await run_step(
            self.ledger_client.get_transaction(tx_hash), Config.LEDGER_REQUEST_TIMEOUT_SECONDS, "reconcile"
        )
        if tx.found and tx.pending:
            raise TransferTimeout(f"Earlier transfer {tx_hash} is still pending on the ledger")
        if tx.found and tx.success:
            logger.info(f"🔎 TRANSFER_RECONCILED: {record.order_reference} already landed as {tx_hash}")
            return TransferResult(
                hash=tx_hash,
                explorer_reference=self.ledger_client.explorer_url(tx_hash),
                simulated=False,
                amount=Decimal(record.amount_token),
                asset_type=record.asset_type,
                recipient=record.wallet_address,
                sender=tx.sender,
                network=self.ledger_client.network,
                gas_used=tx.gas_used,
                gas_unit_price=tx.gas_unit_price,
                reconciled=True,
            )
        if tx.found:
            logger.warning(
                f"⚠️ TRANSFER_RECONCILED: {record.order_reference} earlier transfer {tx_hash} failed "
                f"({tx.vm_status}) - resubmitting"
            )
            return None

        expires_at = record.pending_transfer_expires_at
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at is None or datetime.now(timezone.utc) <= expires_at:
            raise TransferTimeout(f"Earlier transfer {tx_hash} is unseen but has not expired yet")
        logger.warning(f"⚠️ TRANSFER_RECONCILED: {record.order_reference} earlier transfer {tx_hash} expired unseen")
        return None

    async def ensure_balance(self, amount: Decimal, asset_type: str):
        """
        Make sure the signer holds amount plus the gas reserve.

        One top-up attempt: request funding, wait the settle delay, re-check.
        Still short afterwards raises InsufficientBalance.
        """
        required = amount + Config.SIGNER_GAS_RESERVE
        request_timeout = Config.LEDGER_REQUEST_TIMEOUT_SECONDS
        balance = await run_step(
            self.ledger_client.get_balance(self.signer.address, asset_type), request_timeout, "balance"
        )
        if balance >= required:
            return

        shortfall = required - balance
        logger.warning(
            f"💸 SIGNER_BALANCE: {self.signer.address} has {balance} {asset_type}, "
            f"needs {required} - requesting top-up"
        )
        if asset_type.upper() == Config.NATIVE_ASSET and self.funding_client.is_available():
            top_up = max(Config.FUNDING_MIN_AMOUNT, shortfall * 2)
            await run_step(
                self.funding_client.request_top_up(self.signer.address, top_up),
                Config.FUNDING_TIMEOUT_SECONDS, "funding",
            )
            await asyncio.sleep(Config.FUNDING_SETTLE_DELAY_SECONDS)
            balance = await run_step(
                self.ledger_client.get_balance(self.signer.address, asset_type), request_timeout, "balance_recheck"
            )
            if balance >= required:
                logger.info(f"✅ SIGNER_BALANCE: Top-up landed, balance now {balance} {asset_type}")
                return

        raise InsufficientBalance(
            f"Signer balance {balance} {asset_type} is below the required {required} {asset_type}"
        )
