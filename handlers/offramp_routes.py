"""Off-ramp API: tokens in, fiat out"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from handlers.identity import client_info, get_orchestrator, parse_json_body, require_owner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/offramp", tags=["offramp"])


@router.post("/estimate")
async def estimate_offramp_payout(
    request: Request,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    body = await parse_json_body(request)
    quote = orchestrator.quote("off_ramp", body.get("amount"), body.get("asset_type"))
    return {"success": True, "quote": quote}


@router.post("/withdrawals")
async def create_offramp_withdrawal(
    request: Request,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    """Quote the withdrawal and return deposit instructions"""
    body = await parse_json_body(request)
    result = await orchestrator.create_offramp_withdrawal(
        owner_id=owner_id,
        amount=body.get("amount"),
        asset_type=body.get("asset_type"),
        bank_account_ref=body.get("bank_account_ref"),
        wallet_address=body.get("wallet_address"),
        client_info=client_info(request),
        notes=body.get("notes"),
    )
    return JSONResponse(status_code=201, content=result)


@router.post("/withdrawals/{record_id}/verify-deposit")
async def verify_offramp_deposit(
    record_id: int,
    request: Request,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    body = await parse_json_body(request)
    response = await orchestrator.verify_offramp_deposit(
        record_id, body.get("transaction_hash"), owner_id=owner_id
    )
    return JSONResponse(status_code=response.http_status, content=response.to_dict())


@router.post("/withdrawals/{record_id}/confirm-payout")
async def confirm_offramp_payout(
    record_id: int,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    response = await orchestrator.confirm_offramp_payout(record_id, owner_id=owner_id)
    return response.to_dict()


@router.post("/withdrawals/{record_id}/cancel")
async def cancel_offramp_withdrawal(
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
