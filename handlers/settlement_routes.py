"""Settlement record queries, ledger lookups, public rates/limits/tokens and health"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from handlers.identity import get_orchestrator, require_owner

logger = logging.getLogger(__name__)

router = APIRouter(tags=["settlements"])


@router.get("/settlements")
async def list_settlements(
    status: Optional[str] = Query(None),
    direction: Optional[str] = Query(None),
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    return await orchestrator.list_settlements(owner_id, status=status, direction=direction, page=page, limit=limit)


# Declared before /settlements/{record_id} so "stats" is not parsed as an id
@router.get("/settlements/stats")
async def owner_stats(
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    return await orchestrator.get_owner_stats(owner_id)


@router.get("/settlements/{record_id}")
async def get_settlement(
    record_id: int,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    return {"success": True, "settlement": await orchestrator.get_settlement(record_id, owner_id=owner_id)}


@router.get("/tokens")
async def supported_tokens(orchestrator=Depends(get_orchestrator)):
    return orchestrator.supported_tokens()


@router.get("/ledger/transactions/{tx_hash}")
async def ledger_transaction(
    tx_hash: str,
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    return await orchestrator.lookup_transaction(tx_hash)


@router.get("/ledger/balance/{address}")
async def ledger_balance(
    address: str,
    asset_type: Optional[str] = Query(None),
    owner_id: str = Depends(require_owner),
    orchestrator=Depends(get_orchestrator),
):
    return await orchestrator.wallet_balance(address, asset_type)


@router.get("/rates")
async def rates(orchestrator=Depends(get_orchestrator)):
    return {"success": True, "rates": orchestrator.rates()}


@router.get("/limits")
async def limits(orchestrator=Depends(get_orchestrator)):
    return {"success": True, "limits": orchestrator.limits()}


@router.get("/health")
async def health_check(orchestrator=Depends(get_orchestrator)):
    """Health check with ledger reachability and configuration status"""
    health = await orchestrator.health()
    return JSONResponse(status_code=200 if health["status"] == "healthy" else 503, content=health)
