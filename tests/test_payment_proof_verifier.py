"""
Payment proof verification: signature checks, claim-once and duplicates.
"""
import asyncio

import pytest

from models import FailureCode, PaymentStatus, SettlementStatus
from services.payment_proof_verifier import PaymentProof, PaymentProofVerifier, compute_payment_signature
from services.settlement_errors import SignatureMismatch, ValidationError
from tests.settlement_test_foundation import create_offramp_record, create_onramp_record

SECRET = "proof_test_secret"


def signed_proof(order_id, payment_id="pay_abc123", secret=SECRET):
    return PaymentProof(
        external_order_id=order_id,
        external_payment_id=payment_id,
        signature=compute_payment_signature(secret, order_id, payment_id),
    )


class TestSignature:

    def test_signature_is_deterministic_hex(self):
        first = compute_payment_signature(SECRET, "order_1", "pay_1")
        assert first == compute_payment_signature(SECRET, "order_1", "pay_1")
        assert len(first) == 64
        int(first, 16)

    def test_signature_binds_order_and_payment(self):
        assert compute_payment_signature(SECRET, "order_1", "pay_1") != compute_payment_signature(SECRET, "order_1", "pay_2")
        assert compute_payment_signature(SECRET, "order_1", "pay_1") != compute_payment_signature(SECRET, "order_2", "pay_1")

    def test_single_character_mutation_rejected(self):
        verifier = PaymentProofVerifier(None, secret=SECRET)
        proof = signed_proof("order_1")
        assert verifier.signature_matches(proof)
        flipped = "0" if proof.signature[10] != "0" else "1"
        proof.signature = proof.signature[:10] + flipped + proof.signature[11:]
        assert not verifier.signature_matches(proof)

    def test_uppercase_signature_accepted(self):
        verifier = PaymentProofVerifier(None, secret=SECRET)
        proof = signed_proof("order_1")
        proof.signature = proof.signature.upper()
        assert verifier.signature_matches(proof)

    def test_no_secret_rejects_everything(self):
        verifier = PaymentProofVerifier(None, secret="")
        assert not verifier.signature_matches(signed_proof("order_1", secret=""))


class TestVerify:

    @pytest.mark.asyncio
    async def test_valid_proof_claims_record(self, store):
        record = await create_onramp_record(store)
        verifier = PaymentProofVerifier(store, secret=SECRET)

        outcome = await verifier.verify(record, signed_proof(record.gateway_order_id), actor="user-1")

        assert outcome.claimed and not outcome.duplicate
        assert outcome.record.status == SettlementStatus.PAYMENT_VERIFIED.value
        assert outcome.record.payment_status == PaymentStatus.SUCCESS.value
        assert outcome.record.payment_proof_id == "pay_abc123"

    @pytest.mark.asyncio
    async def test_second_proof_is_duplicate_and_not_overwritten(self, store):
        record = await create_onramp_record(store)
        verifier = PaymentProofVerifier(store, secret=SECRET)
        await verifier.verify(record, signed_proof(record.gateway_order_id, "pay_first"))

        current = await store.get(record.id)
        outcome = await verifier.verify(current, signed_proof(record.gateway_order_id, "pay_second"))

        assert outcome.duplicate and not outcome.claimed
        assert (await store.get(record.id)).payment_proof_id == "pay_first"

    @pytest.mark.asyncio
    async def test_concurrent_proofs_claim_once(self, store):
        record = await create_onramp_record(store)
        verifier = PaymentProofVerifier(store, secret=SECRET)

        outcomes = await asyncio.gather(*[
            verifier.verify(record, signed_proof(record.gateway_order_id, f"pay_{i}"))
            for i in range(4)
        ])

        assert sum(1 for outcome in outcomes if outcome.claimed) == 1
        assert sum(1 for outcome in outcomes if outcome.duplicate) == 3

    @pytest.mark.asyncio
    async def test_mismatch_fails_record(self, store):
        record = await create_onramp_record(store)
        verifier = PaymentProofVerifier(store, secret=SECRET)
        proof = signed_proof(record.gateway_order_id, secret="wrong_secret")

        with pytest.raises(SignatureMismatch):
            await verifier.verify(record, proof)

        failed = await store.get(record.id)
        assert failed.status == SettlementStatus.FAILED.value
        assert failed.payment_status == PaymentStatus.FAILED.value
        assert failed.failure_code == FailureCode.SIGNATURE_MISMATCH.value
        assert failed.payment_proof_id is None

    @pytest.mark.asyncio
    async def test_proof_for_other_order_rejected(self, store):
        record = await create_onramp_record(store)
        verifier = PaymentProofVerifier(store, secret=SECRET)

        with pytest.raises(ValidationError, match="does not belong"):
            await verifier.verify(record, signed_proof("order_someone_else"))
        assert (await store.get(record.id)).status == SettlementStatus.CREATED.value

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, store):
        record = await create_onramp_record(store)
        verifier = PaymentProofVerifier(store, secret=SECRET)

        with pytest.raises(ValidationError):
            await verifier.verify(record, PaymentProof(record.gateway_order_id, "", "abc"))

    @pytest.mark.asyncio
    async def test_cancelled_order_cannot_be_verified(self, store):
        record = await create_onramp_record(store)
        await store.require_transition(record.id, SettlementStatus.CREATED, SettlementStatus.CANCELLED, "test")
        verifier = PaymentProofVerifier(store, secret=SECRET)

        with pytest.raises(ValidationError, match="cancelled"):
            await verifier.verify(await store.get(record.id), signed_proof(record.gateway_order_id))

    @pytest.mark.asyncio
    async def test_offramp_record_rejected(self, store):
        record = await create_offramp_record(store)
        verifier = PaymentProofVerifier(store, secret=SECRET)

        with pytest.raises(ValidationError, match="on-ramp"):
            await verifier.verify(record, signed_proof("order_x"))
