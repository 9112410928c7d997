"""
Payment Proof Verifier

Checks the gateway's HMAC-SHA256 signature over "order_id|payment_id" and
claims the on-ramp record exactly once. A proof arriving for a record that
already holds one is reported as a duplicate and never overwrites it.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from config import Config
from models import SettlementDirection, SettlementRecord, SettlementStatus
from services.settlement_errors import SignatureMismatch, ValidationError
from services.settlement_store import SettlementStore

logger = logging.getLogger(__name__)


@dataclass
class PaymentProof:
    external_order_id: str
    external_payment_id: str
    signature: str


@dataclass
class ProofOutcome:
    record: SettlementRecord
    duplicate: bool
    # True only for the caller that won the claim and must run the transfer
    claimed: bool


def compute_payment_signature(secret: str, order_id: str, payment_id: str) -> str:
    return hmac.new(
        secret.encode(),
        f"{order_id}|{payment_id}".encode(),
        hashlib.sha256,
    ).hexdigest()


class PaymentProofVerifier:
    """Verifies payment proofs and claims records for transfer"""

    def __init__(self, store: SettlementStore, secret: Optional[str] = None):
        self.store = store
        self.secret = secret if secret is not None else Config.GATEWAY_KEY_SECRET

    def signature_matches(self, proof: PaymentProof) -> bool:
        if not self.secret:
            logger.error("❌ PAYMENT_PROOF: No gateway secret configured - rejecting all proofs")
            return False
        expected = compute_payment_signature(self.secret, proof.external_order_id, proof.external_payment_id)
        return hmac.compare_digest(expected, (proof.signature or "").strip().lower())

    async def verify(self, record: SettlementRecord, proof: PaymentProof, actor: str = "system") -> ProofOutcome:
        if record.direction != SettlementDirection.ON_RAMP.value:
            raise ValidationError("Payment proofs only apply to on-ramp orders")
        if not proof.external_order_id or not proof.external_payment_id or not proof.signature:
            raise ValidationError("order id, payment id and signature are required")
        if proof.external_order_id != record.gateway_order_id:
            raise ValidationError("Payment proof does not belong to this order")

        # Idempotency guard before any signature work
        if record.payment_proof_id:
            logger.info(f"🔁 PAYMENT_PROOF_DUPLICATE: {record.order_reference} already holds a proof")
            return ProofOutcome(record=record, duplicate=True, claimed=False)

        if record.status != SettlementStatus.CREATED.value:
            raise ValidationError(f"Order is {record.status}; payment can no longer be verified")

        if not self.signature_matches(proof):
            logger.critical(f"🚨 PAYMENT_PROOF_REJECTED: Signature mismatch for {record.order_reference}")
            await self.store.mark_payment_rejected(record.id, "Payment signature verification failed", actor=actor)
            raise SignatureMismatch("Payment signature verification failed")

        claimed = await self.store.claim_payment_proof(
            record.id, proof.external_payment_id, proof.signature, actor=actor
        )
        if claimed is None:
            # Lost the race: someone else stored a proof (or the order moved on)
            current = await self.store.get(record.id)
            if current.payment_proof_id:
                logger.info(f"🔁 PAYMENT_PROOF_DUPLICATE: {record.order_reference} claimed concurrently")
                return ProofOutcome(record=current, duplicate=True, claimed=False)
            raise ValidationError(f"Order is {current.status}; payment can no longer be verified")

        logger.info(f"✅ PAYMENT_PROOF_VERIFIED: {record.order_reference} payment {proof.external_payment_id}")
        return ProofOutcome(record=claimed, duplicate=False, claimed=True)
