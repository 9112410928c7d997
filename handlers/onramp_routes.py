"""On-ramp API: fiat in, tokens out"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from handlers.identity import client_info, get_orchestrator, optional_int, parse_json_body, require_owner
from services.payment_proof_verifier import PaymentProof

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/onramp", tags=["onramp"])


@router.post("/orders")
async def create_onramp_order(
    request: Request,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    """Quote the order and open a gateway checkout"""
    body = await parse_json_body(request)
    result = await orchestrator.create_onramp_order(
        owner_id=owner_id,
        amount=body.get("amount"),
        asset_type=body.get("asset_type"),
        wallet_address=body.get("wallet_address"),
        client_info=client_info(request),
        notes=body.get("notes"),
    )
    return JSONResponse(status_code=201, content=result)


@router.post("/verify-payment")
async def verify_onramp_payment(
    request: Request,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    """
    Verify the gateway's payment proof and deliver the tokens.

    200 when the transfer completed (or the proof was already processed),
    202 when payment is verified but the transfer is pending resolution.
    """
    body = await parse_json_body(request)
    proof = PaymentProof(
        external_order_id=body.get("order_id") or "",
        external_payment_id=body.get("payment_id") or "",
        signature=body.get("signature") or "",
    )
    response = await orchestrator.verify_onramp_payment(
        proof,
        owner_id=owner_id,
        record_id=optional_int(body.get("settlement_id"), "settlement_id"),
    )
    return JSONResponse(status_code=response.http_status, content=response.to_dict())


@router.post("/estimate-cost")
async def estimate_transfer_cost(
    request: Request,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    body = await parse_json_body(request)
    estimate = await orchestrator.estimate_transfer_cost(
        asset_type=body.get("asset_type"),
        amount=body.get("amount"),
        wallet_address=body.get("wallet_address"),
    )
    return {"success": True, "estimate": estimate}


@router.post("/orders/{record_id}/cancel")
async def cancel_onramp_order(
    record_id: int,
    request: Request,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    reason = None
    if await request.body():
        reason = (await parse_json_body(request)).get("reason")
    response = await orchestrator.cancel_settlement(record_id, owner_id=owner_id, reason=reason)
    return response.to_dict()


@router.post("/orders/{record_id}/retry")
async def retry_onramp_transfer(
    record_id: int,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    response = await orchestrator.retry_transfer(record_id, owner_id=owner_id)
    return JSONResponse(status_code=response.http_status, content=response.to_dict())


@router.get("/orders/{gateway_order_id}/status")
async def onramp_order_status(
    gateway_order_id: str,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    """Gateway order status, falling back to the local record when the gateway is down"""
    return await orchestrator.get_order_status(gateway_order_id, owner_id)
