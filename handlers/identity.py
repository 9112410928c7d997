"""
Identity boundary.

The identity collaborator authenticates users upstream and forwards the
caller's opaque owner id in X-Owner-Id. When IDENTITY_SHARED_SECRET is set
the header must be accompanied by X-Identity-Signature, an HMAC-SHA256 of
the owner id under that secret.
"""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException, Request

from config import Config
from services.settlement_errors import ValidationError

logger = logging.getLogger(__name__)


def sign_owner_id(owner_id: str, secret: str) -> str:
    return hmac.new(secret.encode(), owner_id.encode(), hashlib.sha256).hexdigest()


async def require_owner(
    x_owner_id: Optional[str] = Header(None, alias="X-Owner-Id"),
    x_identity_signature: Optional[str] = Header(None, alias="X-Identity-Signature"),
) -> str:
    """FastAPI dependency resolving the authenticated owner id"""
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    if len(owner_id) > 128:
        raise HTTPException(status_code=400, detail="Owner id too long")

    secret = Config.IDENTITY_SHARED_SECRET
    if secret:
        expected = sign_owner_id(owner_id, secret)
        if not x_identity_signature or not hmac.compare_digest(expected, x_identity_signature.strip().lower()):
            logger.warning(f"🚫 IDENTITY_SECURITY: Invalid identity signature for owner {owner_id}")
            raise HTTPException(status_code=401, detail="Invalid identity signature")
    return owner_id


def client_info(request: Request) -> Dict[str, Any]:
    """Client details recorded on new settlement records"""
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": ip_address,
    }


async def parse_json_body(request: Request) -> Dict[str, Any]:
    """Request body as a JSON object, 400 otherwise"""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON format")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="JSON object expected")
    return body


def get_orchestrator(request: Request):
    """The application's SettlementOrchestrator"""
    return request.app.state.orchestrator


def optional_int(value: Any, field: str) -> Optional[int]:
    """Optional integer body field, ValidationError when malformed"""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
