"""
Off-ramp Deposit Verifier

Confirms the deposit a user claims to have made for a withdrawal. A ledger
lookup verifies it when the transaction succeeded, is a coin transfer, pays
the withdrawal's deposit address and moves at least the quoted token amount.
When the lookup itself fails the claim is accepted as demo_accepted only if
ALLOW_DEMO_DEPOSIT_ACCEPTANCE is on.
"""

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, ROUND_UP
from typing import Optional

from config import Config
from models import SettlementDirection, SettlementRecord, SettlementStatus, VerificationMethod
from services.ledger_client import LedgerClient, LedgerTransaction, to_base_units
from services.quote_calculator import quantize_token
from services.settlement_errors import LedgerUnavailable, TransferTimeout, ValidationError
from services.settlement_store import SettlementStore

logger = logging.getLogger(__name__)

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
COIN_TRANSFER_FUNCTIONS = {
    "0x1::aptos_account::transfer",
    "0x1::aptos_account::transfer_coins",
    "0x1::coin::transfer",
}


def normalize_address(address) -> str:
    """Canonical form for comparing ledger addresses (case and leading zeros)"""
    value = str(address or "").strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value.lstrip("0")


class DepositVerifier:
    """Verifies off-ramp deposits against the ledger"""

    def __init__(self, store: SettlementStore, ledger_client: LedgerClient,
                 allow_demo_acceptance: Optional[bool] = None):
        self.store = store
        self.ledger_client = ledger_client
        self.allow_demo_acceptance = (
            Config.ALLOW_DEMO_DEPOSIT_ACCEPTANCE if allow_demo_acceptance is None else allow_demo_acceptance
        )

    def expected_deposit_address(self, record: SettlementRecord) -> Optional[str]:
        return (record.record_metadata or {}).get("deposit_address") or Config.OFFRAMP_DEPOSIT_ADDRESS

    def _check_transfer(self, record: SettlementRecord, tx: LedgerTransaction):
        """The committed transaction must actually pay this withdrawal"""
        asset = Config.asset_config(record.asset_type)
        allowed = set(COIN_TRANSFER_FUNCTIONS)
        if asset.get("transfer_path"):
            allowed.add(asset["transfer_path"])
        if tx.function not in allowed or len(tx.arguments) < 2:
            logger.warning(f"🚫 DEPOSIT_NOT_TRANSFER: {tx.hash} calls {tx.function}")
            raise ValidationError("Deposit transaction is not a token transfer")

        recipient, amount = tx.arguments[0], tx.arguments[1]
        expected = self.expected_deposit_address(record)
        if not expected or normalize_address(recipient) != normalize_address(expected):
            logger.warning(
                f"🚫 DEPOSIT_WRONG_RECIPIENT: {tx.hash} paid {recipient}, expected {expected} "
                f"for {record.order_reference}"
            )
            raise ValidationError("Deposit transaction was not sent to the deposit address")

        decimals = int(asset.get("decimals", 8))
        token_amount = quantize_token(Decimal(str(record.amount_token)))
        required = to_base_units(token_amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_UP), decimals)
        try:
            paid = int(amount)
        except (TypeError, ValueError):
            raise ValidationError("Deposit transaction amount is not readable")
        if paid < required:
            logger.warning(
                f"🚫 DEPOSIT_SHORT: {tx.hash} moved {paid} base units, {record.order_reference} needs {required}"
            )
            raise ValidationError("Deposit amount is less than the withdrawal amount")

    async def verify(self, record: SettlementRecord, tx_hash: str, actor: str = "system") -> SettlementRecord:
        if record.direction != SettlementDirection.OFF_RAMP.value:
            raise ValidationError("Deposits only apply to off-ramp withdrawals")
        tx_hash = (tx_hash or "").strip()
        if not TX_HASH_PATTERN.match(tx_hash):
            raise ValidationError("Invalid transaction hash format")
        if record.status != SettlementStatus.WITHDRAWAL_REQUESTED.value:
            raise ValidationError(f"Withdrawal is {record.status}; deposit can no longer be verified")

        existing = await self.store.find_by_deposit_hash(tx_hash)
        if existing is not None:
            logger.warning(
                f"🚫 DEPOSIT_REUSE: {tx_hash} already backs {existing.order_reference}, "
                f"rejected for {record.order_reference}"
            )
            raise ValidationError("This deposit transaction has already been used for another withdrawal")

        verified_at = datetime.now(timezone.utc).isoformat()
        try:
            tx = await self.ledger_client.get_transaction(tx_hash)
            lookup_error = None if tx.found else "transaction not found on ledger"
        except (LedgerUnavailable, TransferTimeout) as e:
            tx = None
            lookup_error = e.message

        if lookup_error is None:
            if tx.pending:
                raise ValidationError("Deposit transaction is still pending; try again shortly")
            if not tx.success:
                logger.warning(f"🚫 DEPOSIT_FAILED_ON_LEDGER: {tx_hash} ({tx.vm_status})")
                raise ValidationError(f"Deposit transaction failed on the ledger: {tx.vm_status}")
            self._check_transfer(record, tx)
            method = VerificationMethod.LEDGER_CONFIRMED
            metadata = {
                "deposit_sender": tx.sender,
                "deposit_amount_base_units": str(tx.arguments[1]),
                "deposit_ledger_version": tx.version,
                "deposit_verified_at": verified_at,
            }
        elif self.allow_demo_acceptance:
            logger.warning(
                f"🧪 DEPOSIT_DEMO_ACCEPTED: {record.order_reference} {tx_hash} accepted without "
                f"ledger confirmation ({lookup_error})"
            )
            method = VerificationMethod.DEMO_ACCEPTED
            metadata = {
                "verification_note": f"Accepted without ledger confirmation: {lookup_error}",
                "deposit_verified_at": verified_at,
            }
        else:
            logger.error(f"❌ DEPOSIT_UNVERIFIED: {record.order_reference} {tx_hash}: {lookup_error}")
            raise LedgerUnavailable(f"Could not confirm deposit on the ledger: {lookup_error}")

        updated = await self.store.mark_deposit_verified(
            record.id, tx_hash, method.value, metadata_updates=metadata, actor=actor
        )
        if updated is None:
            current = await self.store.get(record.id)
            raise ValidationError(f"Withdrawal is {current.status}; deposit can no longer be verified")
        logger.info(f"✅ DEPOSIT_VERIFIED: {record.order_reference} via {method.value}")
        return updated
