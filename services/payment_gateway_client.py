"""Payment gateway client: creates checkout orders the payment proof is later signed over"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from services.settlement_errors import GatewayError

logger = logging.getLogger(__name__)


class PaymentGatewayClient:
    """Orders API client (HTTP basic auth with key id / key secret)"""

    def __init__(self, base_url: Optional[str] = None, key_id: Optional[str] = None,
                 key_secret: Optional[str] = None):
        self.base_url = (base_url or Config.GATEWAY_BASE_URL).rstrip("/")
        self.key_id = key_id or Config.GATEWAY_KEY_ID
        self.key_secret = key_secret or Config.GATEWAY_KEY_SECRET

    def is_available(self) -> bool:
        return bool(self.key_id and self.key_secret)

    @property
    def public_key(self) -> Optional[str]:
        """Key id handed to the checkout client"""
        return self.key_id

    async def create_order(self, amount: Decimal, currency: str, notes: Dict[str, Any]) -> Dict[str, Any]:
        """Create a checkout order for `amount` (major units); returns the gateway order"""
        if not self.is_available():
            logger.error("❌ GATEWAY: Gateway credentials not configured")
            raise GatewayError("Payment gateway is not configured")

        payload = {
            # Gateway amounts are in minor units
            "amount": int((amount * 100).to_integral_value()),
            "currency": currency,
            "receipt": f"onramp_{str(int(time.time() * 1000))[-8:]}",
            "payment_capture": 1,
            "notes": {key: str(value) for key, value in notes.items() if value is not None},
        }
        url = f"{self.base_url}/orders"
        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=Config.GATEWAY_TIMEOUT_SECONDS)
                async with session.post(
                    url,
                    json=payload,
                    auth=aiohttp.BasicAuth(self.key_id, self.key_secret),
                    timeout=timeout,
                ) as response:
                    body = await response.json(content_type=None)
                    if response.status in (200, 201) and body.get("id"):
                        logger.info(f"✅ GATEWAY: Order {body['id']} created for {amount} {currency}")
                        return {"id": body["id"], "receipt": payload["receipt"], "raw": body}
                    if response.status == 401:
                        logger.error("🔑 GATEWAY: Authentication failed - check GATEWAY_KEY_ID/GATEWAY_KEY_SECRET")
                    else:
                        logger.error(f"❌ GATEWAY: HTTP {response.status}: {body}")
                    raise GatewayError(f"Failed to create payment order (HTTP {response.status})")
        except asyncio.TimeoutError:
            raise GatewayError("Payment gateway timed out")
        except aiohttp.ClientError as e:
            logger.error(f"❌ GATEWAY: Request failed: {e}")
            raise GatewayError(f"Payment gateway unreachable: {e}")

    async def fetch_order(self, order_id: str) -> Dict[str, Any]:
        """Current gateway view of a checkout order (status, amount in minor units)"""
        if not self.is_available():
            raise GatewayError("Payment gateway is not configured")

        url = f"{self.base_url}/orders/{order_id}"
        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=Config.GATEWAY_TIMEOUT_SECONDS)
                async with session.get(
                    url,
                    auth=aiohttp.BasicAuth(self.key_id, self.key_secret),
                    timeout=timeout,
                ) as response:
                    body = await response.json(content_type=None)
                    if response.status == 200 and body.get("id"):
                        return {
                            "id": body["id"],
                            "status": body.get("status"),
                            "amount": body.get("amount"),
                            "amount_paid": body.get("amount_paid"),
                            "currency": body.get("currency"),
                            "created_at": body.get("created_at"),
                        }
                    logger.warning(f"⚠️ GATEWAY: Order {order_id} fetch returned HTTP {response.status}")
                    raise GatewayError(f"Failed to fetch payment order (HTTP {response.status})")
        except asyncio.TimeoutError:
            raise GatewayError("Payment gateway timed out")
        except aiohttp.ClientError as e:
            logger.error(f"❌ GATEWAY: Order fetch failed: {e}")
            raise GatewayError(f"Payment gateway unreachable: {e}")
