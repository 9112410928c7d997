"""
Payment Gateway Webhook Handler

Server-to-server confirmation of captured payments. The raw body is
authenticated with HMAC-SHA256 under GATEWAY_WEBHOOK_SECRET; a verified
"payment.captured" event settles the order exactly like a client-submitted
proof would (duplicates are no-ops).
"""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from config import Config
from handlers.identity import get_orchestrator
from services.payment_proof_verifier import PaymentProof, compute_payment_signature
from services.settlement_errors import NotFoundError
from utils.settlement_audit_logger import SettlementEventType, settlement_audit_logger

logger = logging.getLogger(__name__)

router = APIRouter()

HANDLED_EVENTS = {"payment.captured", "order.paid"}


def _verify_gateway_signature(raw_body: bytes, signature: Optional[str]):
    """Verify the webhook body signature"""
    webhook_secret = Config.GATEWAY_WEBHOOK_SECRET
    if not webhook_secret:
        logger.critical(
            f"🚨 GATEWAY_SECURITY: No webhook secret configured ({Config.CURRENT_ENVIRONMENT}) - rejecting"
        )
        raise HTTPException(status_code=401, detail="Webhook signature verification unavailable")

    if not signature:
        logger.critical("🚨 GATEWAY_SECURITY: Missing webhook signature")
        raise HTTPException(status_code=401, detail="Missing webhook signature")

    expected_signature = hmac.new(webhook_secret.encode(), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature.strip().lower(), expected_signature):
        logger.critical("🚨 GATEWAY_SECURITY: Webhook signature verification FAILED")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    logger.info("✅ GATEWAY_SECURITY: Signature verified successfully")


def _extract_payment(event: Dict[str, Any]) -> Dict[str, Optional[str]]:
    payload = event.get("payload") or {}
    payment = (payload.get("payment") or {}).get("entity") or {}
    order = (payload.get("order") or {}).get("entity") or {}
    return {
        "payment_id": payment.get("id"),
        "order_id": payment.get("order_id") or order.get("id"),
    }


@router.post("/webhooks/gateway")
async def gateway_webhook(
    request: Request,
    x_gateway_signature: Optional[str] = Header(None, alias="X-Gateway-Signature"),
    orchestrator=Depends(get_orchestrator),
):
    raw_body = await request.body()
    _verify_gateway_signature(raw_body, x_gateway_signature)

    try:
        event = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON format")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="JSON object expected")

    event_type = event.get("event")
    settlement_audit_logger.log_event(
        SettlementEventType.WEBHOOK_RECEIVED, owner_id="gateway", additional_data={"event": event_type}
    )
    if event_type not in HANDLED_EVENTS:
        logger.info(f"📥 GATEWAY_WEBHOOK: Ignoring event {event_type}")
        return {"status": "ignored", "event": event_type}

    payment = _extract_payment(event)
    if not payment["payment_id"] or not payment["order_id"]:
        raise HTTPException(status_code=400, detail="Webhook missing payment or order id")

    # The body signature authenticated the gateway; derive the proof it vouches for
    proof = PaymentProof(
        external_order_id=payment["order_id"],
        external_payment_id=payment["payment_id"],
        signature=compute_payment_signature(Config.GATEWAY_KEY_SECRET, payment["order_id"], payment["payment_id"]),
    )
    try:
        response = await orchestrator.verify_onramp_payment(proof)
    except NotFoundError:
        logger.warning(f"⚠️ GATEWAY_WEBHOOK_UNMATCHED: No order for {payment['order_id']}")
        return JSONResponse(status_code=200, content={"status": "unmatched"})

    logger.info(
        f"📥 GATEWAY_WEBHOOK: {payment['order_id']} -> {response.record.status} "
        f"(duplicate={response.duplicate})"
    )
    return JSONResponse(
        status_code=200,
        content={"status": "processed", "duplicate": response.duplicate, "settlement_status": response.record.status},
    )
