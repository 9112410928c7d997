"""
Settlement Orchestrator

Single entry point for every settlement operation. Sequences the quote
calculator, payment gateway, proof verifier, transfer executor, deposit
verifier and payout service against the settlement store, and turns the
outcome into the response the API returns.

On-ramp:  create order -> verify payment proof -> transfer -> COMPLETED | FAILED
Off-ramp: create withdrawal -> verify deposit -> payout -> COMPLETED
"""

import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from config import Config
from models import (
    FailureCode, PaymentStatus, SettlementDirection, SettlementRecord, SettlementStatus
)
from services.deposit_verifier import DepositVerifier
from services.funding_client import FundingClient
from services.ledger_client import LedgerClient, get_ledger_client
from services.ledger_signer import LedgerSigner, get_ledger_signer
from services.payment_gateway_client import PaymentGatewayClient
from services.payment_proof_verifier import PaymentProof, PaymentProofVerifier
from services.payout_service import PayoutService
from services.quote_calculator import QuoteCalculator
from services.settlement_errors import (
    ClaimLost, GatewayError, LedgerUnavailable, NotFoundError, PayoutError, SettlementError, TransferTimeout,
    ValidationError
)
from services.settlement_store import SettlementStore
from services.signer_queue import SignerWorkQueue
from services.transfer_executor import TransferExecutor
from services.transfer_strategies import SubmissionGuard, TransferResult
from utils.keyed_lock import KeyedLock
from utils.signer_lease import SignerLease
from utils.settlement_audit_logger import SettlementEventType, settlement_audit_logger
from utils.settlement_state_validator import SettlementStateValidator

logger = logging.getLogger(__name__)

WALLET_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{1,64}$")
TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
TRANSFER_PENDING_MESSAGE = (
    "Your payment was received. The token transfer did not complete yet and is "
    "pending resolution; no further payment is needed."
)


def new_order_reference(direction: SettlementDirection) -> str:
    prefix = "ONR" if direction == SettlementDirection.ON_RAMP else "OFR"
    return f"{prefix}-{int(time.time())}-{secrets.token_hex(4).upper()}"


class ClaimSubmissionGuard(SubmissionGuard):
    """Ties a ledger submission to the transfer claim that authorized it"""

    def __init__(self, store: SettlementStore, record: SettlementRecord, claim_token: str):
        self.store = store
        self.record = record
        self.claim_token = claim_token

    async def before_submit(self):
        if not await self.store.refresh_transfer_claim(self.record.id, self.claim_token):
            logger.error(f"🚫 TRANSFER_CLAIM_LOST: {self.record.order_reference} claim taken over before submission")
            raise ClaimLost("Transfer claim was taken over before submission; nothing was sent")

    async def submitted(self, tx_hash: str, expires_at: datetime):
        if not await self.store.record_pending_transfer(self.record.id, self.claim_token, tx_hash, expires_at):
            logger.critical(
                f"🚨 TRANSFER_CLAIM_LOST: {self.record.order_reference} submitted {tx_hash} "
                f"but could not record it against the claim"
            )


@dataclass
class TransferOutcome:
    """What happened when a transfer was attempted for a record"""
    record: SettlementRecord
    result: Optional[TransferResult] = None
    error: Optional[SettlementError] = None
    in_flight: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.error is None


@dataclass
class SettlementResponse:
    """Operation result handed back to the API layer"""
    record: SettlementRecord
    http_status: int = 200
    message: str = ""
    user_state: Optional[str] = None
    duplicate: bool = False
    error: Optional[SettlementError] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "success": self.error is None,
            "message": self.message,
            "settlement": self.record.to_dict(),
        }
        if self.user_state:
            body["user_state"] = self.user_state
        if self.duplicate:
            body["duplicate"] = True
        if self.error is not None:
            body["error_code"] = self.error.code
            body["error"] = self.error.message
            body["retryable"] = self.error.retryable
        body.update(self.extra)
        return body


class SettlementOrchestrator:
    """Coordinates the on-ramp and off-ramp settlement pipelines"""

    def __init__(
        self,
        store: SettlementStore,
        ledger_client: LedgerClient,
        signer: Optional[LedgerSigner] = None,
        quote_calculator: Optional[QuoteCalculator] = None,
        gateway_client: Optional[PaymentGatewayClient] = None,
        funding_client: Optional[FundingClient] = None,
        signer_queue: Optional[SignerWorkQueue] = None,
        signer_lease: Optional[SignerLease] = None,
        payout_service: Optional[PayoutService] = None,
        allow_demo_deposit_acceptance: Optional[bool] = None,
    ):
        self.store = store
        self.ledger_client = ledger_client
        self.signer = signer
        self.quote_calculator = quote_calculator or QuoteCalculator()
        self.gateway_client = gateway_client or PaymentGatewayClient()
        self.proof_verifier = PaymentProofVerifier(store)
        self.executor = TransferExecutor(
            ledger_client, signer,
            funding_client=funding_client,
            signer_queue=signer_queue,
            signer_lease=signer_lease or SignerLease(store.session_factory),
        )
        self.deposit_verifier = DepositVerifier(
            store, ledger_client, allow_demo_acceptance=allow_demo_deposit_acceptance
        )
        self.payout_service = payout_service or PayoutService(store)
        self.record_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_wallet_address(address: Optional[str], field_name: str = "wallet_address") -> str:
        address = (address or "").strip()
        if not WALLET_ADDRESS_PATTERN.match(address):
            raise ValidationError(f"{field_name} must be a 0x-prefixed hex ledger address")
        return address

    @staticmethod
    def _client_metadata(client_info: Optional[Dict[str, Any]], notes: Optional[str]) -> Dict[str, Any]:
        metadata = {key: value for key, value in (client_info or {}).items() if value}
        if notes:
            if len(notes) > 500:
                raise ValidationError("notes must be at most 500 characters")
            metadata["notes"] = notes
        return metadata

    async def _load(self, record_id: int, owner_id: Optional[str]) -> SettlementRecord:
        if owner_id is None:
            return await self.store.get(record_id)
        return await self.store.get_for_owner(record_id, owner_id)

    # ------------------------------------------------------------------
    # Quotes, rates, estimates
    # ------------------------------------------------------------------

    def quote(self, direction: str, amount, asset_type: str) -> Dict[str, Any]:
        return self.quote_calculator.quote(direction, amount, asset_type).to_dict()

    def rates(self) -> Dict[str, Any]:
        return self.quote_calculator.rates()

    def limits(self) -> Dict[str, Any]:
        return self.quote_calculator.limits()

    async def estimate_transfer_cost(self, asset_type: str, amount=None,
                                     wallet_address: Optional[str] = None) -> Dict[str, Any]:
        """Network fee estimate for delivering asset_type, plus the quote when amount is given"""
        if wallet_address:
            self._validate_wallet_address(wallet_address)
        live = True
        try:
            gas_unit_price = await self.ledger_client.estimate_gas_price()
        except (LedgerUnavailable, TransferTimeout) as e:
            logger.warning(f"⚠️ GAS_ESTIMATE: Ledger unavailable, using fallback unit price ({e.message})")
            gas_unit_price = Config.GAS_ESTIMATE_FALLBACK_UNIT_PRICE
            live = False

        estimate = self.quote_calculator.estimate_network_fee(asset_type, gas_unit_price)
        estimate["live_gas_price"] = live
        estimate["simulated_transfer"] = not bool(Config.asset_config(asset_type).get("transfer_path"))
        if amount is not None:
            quote = self.quote_calculator.quote_onramp(
                amount, asset_type, network_fee=Decimal(estimate["fiat_fee"] or "0")
            )
            estimate["quote"] = quote.to_dict()
        return estimate

    # ------------------------------------------------------------------
    # On-ramp
    # ------------------------------------------------------------------

    async def create_onramp_order(
        self,
        owner_id: str,
        amount,
        asset_type: str,
        wallet_address: str,
        client_info: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Quote, open a gateway checkout order and persist the record in CREATED"""
        wallet_address = self._validate_wallet_address(wallet_address)
        quote = self.quote_calculator.quote_onramp(amount, asset_type)
        metadata = self._client_metadata(client_info, notes)
        reference = new_order_reference(SettlementDirection.ON_RAMP)

        gateway_order = await self.gateway_client.create_order(
            quote.total_payable,
            quote.fiat_currency,
            notes={
                "order_reference": reference,
                "owner_id": owner_id,
                "asset_type": quote.asset_type,
                "wallet_address": wallet_address,
            },
        )
        metadata["gateway_receipt"] = gateway_order.get("receipt")

        record = await self.store.create_record(
            actor=owner_id,
            order_reference=reference,
            owner_id=owner_id,
            direction=SettlementDirection.ON_RAMP.value,
            amount_fiat=quote.fiat_amount,
            amount_token=quote.token_amount,
            fiat_currency=quote.fiat_currency,
            asset_type=quote.asset_type,
            conversion_rate=quote.conversion_rate,
            wallet_address=wallet_address,
            gateway_fee=quote.gateway_fee,
            network_fee=quote.network_fee,
            platform_fee=quote.platform_fee,
            net_fiat=quote.net_fiat,
            gateway_order_id=gateway_order["id"],
            record_metadata=metadata,
        )
        settlement_audit_logger.log_event(SettlementEventType.ONRAMP_ORDER_CREATED, record)
        return {
            "success": True,
            "settlement": record.to_dict(),
            "quote": quote.to_dict(),
            "checkout": {
                "order_id": gateway_order["id"],
                "amount": str(quote.total_payable),
                "currency": quote.fiat_currency,
                "key": self.gateway_client.public_key,
            },
        }

    async def verify_onramp_payment(
        self,
        proof: PaymentProof,
        owner_id: Optional[str] = None,
        record_id: Optional[int] = None,
    ) -> SettlementResponse:
        """
        Verify a payment proof and, for the caller that claims the record,
        run the transfer. owner_id None means a trusted system caller (the
        gateway webhook); the record is then located by gateway order id.
        """
        if not proof.external_order_id or not proof.external_payment_id or not proof.signature:
            raise ValidationError("order id, payment id and signature are required")
        if record_id is not None:
            record = await self._load(record_id, owner_id)
        else:
            record = await self.store.get_by_gateway_order(proof.external_order_id)
            if owner_id is not None and record.owner_id != owner_id:
                record = await self.store.get_for_owner(record.id, owner_id)
        actor = owner_id or "gateway"

        async with self.record_locks.hold(f"record:{record.id}"):
            record = await self.store.get(record.id)
            try:
                outcome = await self.proof_verifier.verify(record, proof, actor=actor)
            except SettlementError as e:
                if e.code == FailureCode.SIGNATURE_MISMATCH.value:
                    rejected = await self.store.get(record.id)
                    settlement_audit_logger.log_event(
                        SettlementEventType.ONRAMP_PAYMENT_REJECTED, rejected,
                        previous_state=SettlementStatus.CREATED.value,
                    )
                raise

            if outcome.duplicate:
                settlement_audit_logger.log_event(SettlementEventType.ONRAMP_PAYMENT_DUPLICATE, outcome.record)
                return SettlementResponse(
                    record=outcome.record,
                    message="Payment already verified for this order",
                    duplicate=True,
                )

            settlement_audit_logger.log_event(
                SettlementEventType.ONRAMP_PAYMENT_VERIFIED, outcome.record,
                previous_state=SettlementStatus.CREATED.value,
            )
            claim_token = await self._claim_transfer(outcome.record, SettlementStatus.PAYMENT_VERIFIED)

        if claim_token is None:
            transfer = TransferOutcome(record=await self.store.get(record.id), in_flight=True)
        else:
            transfer = await self._run_transfer(
                outcome.record, claim_token, SettlementStatus.PAYMENT_VERIFIED, actor=actor
            )
        return self._transfer_response(transfer, retry=False)

    async def _claim_transfer(self, record: SettlementRecord, expected: SettlementStatus) -> Optional[str]:
        claim_token = await self.store.acquire_transfer_claim(
            record.id, expected, Config.TRANSFER_CLAIM_TTL_SECONDS
        )
        if claim_token is None:
            logger.info(f"⏳ TRANSFER_IN_FLIGHT: {record.order_reference} already claimed")
        return claim_token

    async def _run_transfer(
        self,
        record: SettlementRecord,
        claim_token: str,
        expected: SettlementStatus,
        retry: bool = False,
        actor: str = "system",
    ) -> TransferOutcome:
        """Execute the transfer for a claimed record and persist the outcome"""
        retried_at = datetime.now(timezone.utc).isoformat()
        try:
            record = await self.store.get(record.id)
            guard = ClaimSubmissionGuard(self.store, record, claim_token)
            result = await self.executor.execute(record, guard=guard)
        except SettlementError as e:
            error = e
        except Exception as e:
            logger.exception(f"❌ TRANSFER_UNEXPECTED: {record.order_reference}: {e}")
            error = LedgerUnavailable(f"Unexpected transfer error: {e}")
        else:
            metadata = {"retry_attempt": True, "retried_at": retried_at} if retry else None
            completed = await self.store.complete_transfer(
                record.id, claim_token, expected,
                transfer_hash=result.hash,
                explorer_reference=result.explorer_reference,
                simulated=result.simulated,
                retry=retry,
                metadata_updates=metadata,
                actor=actor,
            )
            if completed is None:
                # Claim was recovered while we were transferring; the recorded
                # pending hash settles the record on recovery or the next retry
                logger.warning(
                    f"⚠️ TRANSFER_CLAIM_LOST: {record.order_reference} transferred {result.hash} "
                    f"after its claim expired - left for reconciliation"
                )
                completed = await self.store.get(record.id)
            settlement_audit_logger.log_event(
                SettlementEventType.ONRAMP_TRANSFER_RETRIED if retry else SettlementEventType.ONRAMP_TRANSFER_COMPLETED,
                completed,
                previous_state=expected.value,
                additional_data={
                    "transfer_hash": result.hash, "simulated": result.simulated, "reconciled": result.reconciled,
                },
            )
            return TransferOutcome(record=completed, result=result)

        logger.error(f"❌ TRANSFER_FAILED: {record.order_reference} {error.code}: {error.message}")
        metadata = {"retry_failed": True, "retry_error": error.message, "retried_at": retried_at} if retry else None
        failed = await self.store.fail_transfer(
            record.id, claim_token, expected,
            failure_code=error.code,
            failure_reason=error.message,
            retry=retry,
            metadata_updates=metadata,
            actor=actor,
        )
        failed = failed or await self.store.get(record.id)
        settlement_audit_logger.log_event(
            SettlementEventType.ONRAMP_TRANSFER_FAILED, failed,
            previous_state=expected.value,
            additional_data={"failure_code": error.code, "retry": retry},
        )
        return TransferOutcome(record=failed, error=error)

    def _transfer_response(self, transfer: TransferOutcome, retry: bool) -> SettlementResponse:
        if transfer.in_flight:
            return SettlementResponse(
                record=transfer.record,
                http_status=202,
                message="Transfer already in progress for this order",
                user_state="transfer_in_progress",
            )
        if transfer.succeeded:
            message = "Tokens transferred successfully"
            if transfer.result.simulated:
                message = "Tokens transferred (simulated transfer)"
            return SettlementResponse(
                record=transfer.record,
                message=message,
                user_state="completed",
                extra={"transfer": transfer.result.to_dict()},
            )
        if retry:
            return SettlementResponse(
                record=transfer.record,
                http_status=transfer.error.http_status,
                message="Retry failed; the order remains failed and can be retried again",
                user_state="transfer_failed",
                error=transfer.error,
            )
        return SettlementResponse(
            record=transfer.record,
            http_status=202,
            message=TRANSFER_PENDING_MESSAGE,
            user_state="payment_received_transfer_pending",
            error=transfer.error,
        )

    async def retry_transfer(self, record_id: int, owner_id: Optional[str] = None) -> SettlementResponse:
        """Re-run the transfer for a FAILED record whose payment was verified"""
        record = await self._load(record_id, owner_id)
        actor = owner_id or "system"

        async with self.record_locks.hold(f"record:{record.id}"):
            record = await self.store.get(record.id)
            if record.direction != SettlementDirection.ON_RAMP.value:
                raise ValidationError("Only on-ramp transfers can be retried")
            if record.status != SettlementStatus.FAILED.value:
                raise ValidationError(f"Only failed orders can be retried (order is {record.status})")
            if record.payment_status != PaymentStatus.SUCCESS.value or not record.payment_proof_id:
                raise ValidationError("Order has no verified payment to retry against")

            attempt = (record.retry_count or 0) + 1
            claim_token = await self._claim_transfer(record, SettlementStatus.FAILED)

        if claim_token is None:
            transfer = TransferOutcome(record=await self.store.get(record.id), in_flight=True)
            return self._transfer_response(transfer, retry=True)

        started = time.monotonic()
        transfer = await self._run_transfer(record, claim_token, SettlementStatus.FAILED, retry=True, actor=actor)
        await self.store.add_retry_log(
            record.id,
            retry_attempt=attempt,
            succeeded=transfer.succeeded,
            failure_code=transfer.error.code if transfer.error else None,
            failure_reason=transfer.error.message if transfer.error else None,
            transfer_hash=transfer.result.hash if transfer.result else None,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return self._transfer_response(transfer, retry=True)

    # ------------------------------------------------------------------
    # Off-ramp
    # ------------------------------------------------------------------

    def deposit_address(self) -> Optional[str]:
        if Config.OFFRAMP_DEPOSIT_ADDRESS:
            return Config.OFFRAMP_DEPOSIT_ADDRESS
        return self.signer.address if self.signer else None

    async def create_offramp_withdrawal(
        self,
        owner_id: str,
        amount,
        asset_type: str,
        bank_account_ref: str,
        wallet_address: Optional[str] = None,
        client_info: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Quote and persist a withdrawal in WITHDRAWAL_REQUESTED with deposit instructions"""
        if not bank_account_ref or not str(bank_account_ref).strip():
            raise ValidationError("bank_account_ref is required")
        if wallet_address:
            wallet_address = self._validate_wallet_address(wallet_address)
        deposit_address = self.deposit_address()
        if not deposit_address:
            raise ValidationError("Off-ramp deposits are not configured")

        quote = self.quote_calculator.quote_offramp(amount, asset_type)
        metadata = self._client_metadata(client_info, notes)
        metadata["deposit_address"] = deposit_address

        record = await self.store.create_record(
            actor=owner_id,
            order_reference=new_order_reference(SettlementDirection.OFF_RAMP),
            owner_id=owner_id,
            direction=SettlementDirection.OFF_RAMP.value,
            amount_fiat=quote.gross_fiat,
            amount_token=quote.token_amount,
            fiat_currency=quote.fiat_currency,
            asset_type=quote.asset_type,
            conversion_rate=quote.conversion_rate,
            wallet_address=wallet_address,
            platform_fee=quote.platform_fee,
            net_fiat=quote.net_fiat,
            bank_account_ref=str(bank_account_ref).strip(),
            record_metadata=metadata,
        )
        settlement_audit_logger.log_event(SettlementEventType.OFFRAMP_WITHDRAWAL_CREATED, record)
        return {
            "success": True,
            "settlement": record.to_dict(),
            "quote": quote.to_dict(),
            "deposit_instructions": {
                "deposit_address": deposit_address,
                "amount": str(quote.token_amount),
                "asset_type": quote.asset_type,
                "network": self.ledger_client.network,
                "note": f"Send exactly {quote.token_amount} {quote.asset_type} and submit the transaction hash",
            },
        }

    async def verify_offramp_deposit(self, record_id: int, tx_hash: str,
                                     owner_id: Optional[str] = None) -> SettlementResponse:
        record = await self._load(record_id, owner_id)
        async with self.record_locks.hold(f"record:{record.id}"):
            record = await self.store.get(record.id)
            verified = await self.deposit_verifier.verify(record, tx_hash, actor=owner_id or "system")
        settlement_audit_logger.log_event(
            SettlementEventType.OFFRAMP_DEPOSIT_VERIFIED, verified,
            previous_state=SettlementStatus.WITHDRAWAL_REQUESTED.value,
            additional_data={"verification_method": verified.verification_method},
        )
        return SettlementResponse(
            record=verified,
            message=f"Deposit verified; {verified.net_fiat} {verified.fiat_currency} payout will be initiated",
            user_state="deposit_verified",
        )

    async def confirm_offramp_payout(self, record_id: int, owner_id: Optional[str] = None) -> SettlementResponse:
        record = await self._load(record_id, owner_id)
        async with self.record_locks.hold(f"record:{record.id}"):
            record = await self.store.get(record.id)
            if record.direction != SettlementDirection.OFF_RAMP.value:
                raise ValidationError("Payouts only apply to off-ramp withdrawals")
            if record.status not in (SettlementStatus.DEPOSIT_VERIFIED.value, SettlementStatus.PAYOUT_INITIATED.value):
                raise ValidationError("Withdrawal must be verified before payout confirmation")
            previous = record.status
            completed = await self.payout_service.confirm(record, actor=owner_id or "system")
        settlement_audit_logger.log_event(
            SettlementEventType.OFFRAMP_PAYOUT_COMPLETED, completed, previous_state=previous,
        )
        return SettlementResponse(
            record=completed,
            message=f"Payout of {completed.net_fiat} {completed.fiat_currency} confirmed",
            user_state="completed",
            extra={"payout": (completed.record_metadata or {}).get("payout_confirmation")},
        )

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    async def cancel_settlement(self, record_id: int, owner_id: Optional[str] = None,
                                reason: Optional[str] = None) -> SettlementResponse:
        """Cancel a record that is still in its direction's initial state"""
        record = await self._load(record_id, owner_id)
        async with self.record_locks.hold(f"record:{record.id}"):
            record = await self.store.get(record.id)
            initial = SettlementStateValidator.initial_state(record.direction)
            if record.status != initial.value:
                raise ValidationError(f"Cannot cancel a record that is {record.status}")
            cancelled = await self.store.require_transition(
                record.id,
                initial,
                SettlementStatus.CANCELLED,
                reason="cancelled by owner" if owner_id else "cancelled",
                actor=owner_id or "system",
                values={"cancelled_at": datetime.now(timezone.utc)},
                metadata_updates={"cancellation_reason": (reason or "")[:500] or None},
            )
        settlement_audit_logger.log_event(
            SettlementEventType.SETTLEMENT_CANCELLED, cancelled, previous_state=initial.value,
        )
        return SettlementResponse(record=cancelled, message="Cancelled", user_state="cancelled")

    async def get_settlement(self, record_id: int, owner_id: Optional[str] = None) -> Dict[str, Any]:
        record = await self._load(record_id, owner_id)
        history = await self.store.history(record.id)
        body = record.to_dict()
        body["status_history"] = [
            {
                "from_status": entry.from_status,
                "to_status": entry.to_status,
                "reason": entry.change_reason,
                "actor": entry.actor,
                "changed_at": entry.changed_at.isoformat() if entry.changed_at else None,
            }
            for entry in history
        ]
        if record.direction == SettlementDirection.ON_RAMP.value:
            body["retryable"] = (
                record.status == SettlementStatus.FAILED.value
                and record.payment_status == PaymentStatus.SUCCESS.value
            )
        return body

    async def list_settlements(
        self,
        owner_id: str,
        status: Optional[str] = None,
        direction: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        limit = limit or Config.LIST_DEFAULT_LIMIT
        if page < 1:
            raise ValidationError("page must be >= 1")
        if limit < 1 or limit > Config.LIST_MAX_LIMIT:
            raise ValidationError(f"limit must be between 1 and {Config.LIST_MAX_LIMIT}")
        if status and status not in {s.value for s in SettlementStatus}:
            raise ValidationError(f"Unknown status filter: {status}")
        if direction and direction not in {d.value for d in SettlementDirection}:
            raise ValidationError(f"Unknown direction filter: {direction}")

        records, total = await self.store.list_records(owner_id, status, direction, page, limit)
        return {
            "success": True,
            "settlements": [record.to_dict() for record in records],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def get_owner_stats(self, owner_id: str) -> Dict[str, Any]:
        return {"success": True, "stats": await self.store.owner_stats(owner_id)}

    # ------------------------------------------------------------------
    # Gateway and ledger lookups
    # ------------------------------------------------------------------

    async def get_order_status(self, gateway_order_id: str, owner_id: str) -> Dict[str, Any]:
        """Gateway view of an owner's checkout order, with local status as fallback"""
        record = await self.store.get_by_gateway_order(gateway_order_id)
        if record.owner_id != owner_id:
            raise NotFoundError(f"No settlement record for gateway order {gateway_order_id}")

        body: Dict[str, Any] = {
            "success": True,
            "settlement": {
                "id": record.id,
                "order_reference": record.order_reference,
                "status": record.status,
                "asset_type": record.asset_type,
                "amount_token": str(record.amount_token),
                "wallet_address": record.wallet_address,
            },
        }
        try:
            body["order"] = await self.gateway_client.fetch_order(gateway_order_id)
        except GatewayError as e:
            logger.warning(f"⚠️ ORDER_STATUS: Gateway unavailable for {gateway_order_id} ({e.message})")
            body["note"] = "Gateway status unavailable, showing local settlement status"
        return body

    async def lookup_transaction(self, tx_hash: str) -> Dict[str, Any]:
        """Ledger transaction details; simulated transfers are answered from our own records"""
        tx_hash = (tx_hash or "").strip()
        if not TX_HASH_PATTERN.match(tx_hash):
            raise ValidationError("Invalid transaction hash format")

        tx = await self.ledger_client.get_transaction(tx_hash)
        if tx.found:
            return {
                "success": True,
                "transaction": {
                    "hash": tx.hash,
                    "pending": tx.pending,
                    "success": tx.success,
                    "vm_status": tx.vm_status,
                    "sender": tx.sender,
                    "gas_used": tx.gas_used,
                    "gas_unit_price": tx.gas_unit_price,
                    "version": tx.version,
                    "timestamp": tx.timestamp,
                    "explorer_url": self.ledger_client.explorer_url(tx.hash),
                    "simulated": False,
                },
            }

        record = await self.store.find_by_transfer_hash(tx_hash)
        if record is not None and record.simulated:
            return {
                "success": True,
                "transaction": {
                    "hash": tx_hash,
                    "pending": False,
                    "success": True,
                    "simulated": True,
                    "order_reference": record.order_reference,
                    "note": f"Simulated {record.asset_type} transfer; it does not exist on the ledger",
                },
            }
        raise NotFoundError(f"Transaction {tx_hash} not found")

    async def wallet_balance(self, address: str, asset_type: Optional[str] = None) -> Dict[str, Any]:
        address = self._validate_wallet_address(address, "address")
        asset = (asset_type or Config.NATIVE_ASSET).upper()
        if not Config.asset_config(asset):
            raise ValidationError(f"Unsupported asset type: {asset_type}")
        balance = await self.ledger_client.get_balance(address, asset)
        fiat_value = self.quote_calculator.fiat_value(balance, asset)
        return {
            "success": True,
            "wallet": {
                "address": address,
                "asset_type": asset,
                "balance": str(balance),
                "fiat_equivalent": str(fiat_value) if fiat_value is not None else None,
                "fiat_currency": Config.FIAT_CURRENCY,
                "network": self.ledger_client.network,
                "checked_at": datetime.now(timezone.utc).isoformat(),
            },
        }

    def supported_tokens(self) -> Dict[str, Any]:
        return dict(self.quote_calculator.supported_tokens(), success=True)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    async def initiate_pending_payouts(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Initiate payouts for verified deposits still below the attempt bound"""
        candidates = await self.store.find_by_status(
            SettlementStatus.DEPOSIT_VERIFIED, SettlementDirection.OFF_RAMP, limit or Config.JOB_BATCH_SIZE
        )
        stats = {"initiated": 0, "failed": 0, "skipped": 0}
        for record in candidates:
            if (record.payout_attempts or 0) >= Config.PAYOUT_MAX_ATTEMPTS:
                stats["skipped"] += 1
                continue
            try:
                async with self.record_locks.hold(f"record:{record.id}"):
                    current = await self.store.get(record.id)
                    if current.status != SettlementStatus.DEPOSIT_VERIFIED.value:
                        stats["skipped"] += 1
                        continue
                    initiated = await self.payout_service.initiate(current)
                settlement_audit_logger.log_event(
                    SettlementEventType.OFFRAMP_PAYOUT_INITIATED, initiated,
                    previous_state=SettlementStatus.DEPOSIT_VERIFIED.value,
                )
                stats["initiated"] += 1
            except PayoutError as e:
                stats["failed"] += 1
                settlement_audit_logger.log_event(
                    SettlementEventType.OFFRAMP_PAYOUT_FAILED, record,
                    additional_data={"error": e.message, "attempt": (record.payout_attempts or 0) + 1},
                )
        if candidates:
            logger.info(f"🏦 PAYOUT_JOB: {stats}")
        return stats

    async def _complete_reconciled(self, record: SettlementRecord) -> Optional[SettlementRecord]:
        """Complete a stale record whose submitted transaction has landed"""
        try:
            result = await self.executor.reconcile_pending(record)
        except SettlementError as e:
            logger.warning(f"⚠️ CLAIM_RECOVERY: {record.order_reference} pending transfer unresolved ({e.message})")
            return None
        if result is None:
            return None
        completed = await self.store.complete_transfer(
            record.id, record.transfer_claim_token, SettlementStatus.PAYMENT_VERIFIED,
            transfer_hash=result.hash,
            explorer_reference=result.explorer_reference,
            simulated=False,
        )
        if completed is not None:
            settlement_audit_logger.log_event(
                SettlementEventType.ONRAMP_TRANSFER_COMPLETED, completed,
                previous_state=SettlementStatus.PAYMENT_VERIFIED.value,
                additional_data={"transfer_hash": result.hash, "reconciled": True},
            )
        return completed

    async def recover_stale_claims(self, limit: Optional[int] = None) -> List[int]:
        """
        Resolve transfers whose claim outlived its TTL.

        A record whose submitted transaction committed is completed; every
        other stale record fails with TIMEOUT and becomes retry-eligible.
        """
        stale = await self.store.find_stale_claims(
            Config.TRANSFER_CLAIM_TTL_SECONDS, limit or Config.JOB_BATCH_SIZE
        )
        recovered = []
        for record in stale:
            if record.pending_transfer_hash:
                completed = await self._complete_reconciled(record)
                if completed is not None:
                    recovered.append(record.id)
                    continue
            failed = await self.store.release_stale_claim(
                record.id, record.transfer_claim_token,
                f"Transfer claim expired after {Config.TRANSFER_CLAIM_TTL_SECONDS}s without resolution",
            )
            if failed is not None:
                recovered.append(record.id)
                settlement_audit_logger.log_event(
                    SettlementEventType.ONRAMP_CLAIM_RECOVERED, failed,
                    previous_state=SettlementStatus.PAYMENT_VERIFIED.value,
                )
        if recovered:
            logger.warning(f"♻️ CLAIM_RECOVERY: Resolved {len(recovered)} stale transfers: {recovered}")
        return recovered

    async def health(self) -> Dict[str, Any]:
        ledger: Dict[str, Any] = {"network": self.ledger_client.network}
        try:
            info = await self.ledger_client.get_ledger_info()
            ledger.update({
                "reachable": True,
                "chain_id": info.get("chain_id"),
                "ledger_version": info.get("ledger_version"),
            })
        except SettlementError as e:
            ledger.update({"reachable": False, "error": e.message})
        return {
            "status": "healthy" if ledger.get("reachable") else "degraded",
            "environment": Config.CURRENT_ENVIRONMENT,
            "ledger": ledger,
            "signer_configured": self.signer is not None,
            "gateway_configured": self.gateway_client.is_available(),
            "demo_deposit_acceptance": self.deposit_verifier.allow_demo_acceptance,
            "config_warnings": Config.validate(),
        }

    async def close(self):
        await self.executor.signer_queue.shutdown()
        await self.ledger_client.close()


def build_settlement_orchestrator(session_factory=None) -> SettlementOrchestrator:
    """Wire the orchestrator from configuration"""
    return SettlementOrchestrator(
        store=SettlementStore(session_factory),
        ledger_client=get_ledger_client(),
        signer=get_ledger_signer(),
    )
