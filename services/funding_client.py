"""Funding source client: tops up the signer account from a faucet or treasury endpoint"""

import asyncio
import logging
from decimal import Decimal
from typing import List, Optional

import aiohttp

from config import Config
from services.ledger_client import to_base_units
from services.settlement_errors import LedgerUnavailable, TransferTimeout

logger = logging.getLogger(__name__)


class FundingClient:
    """Requests a top-up of the native asset for an address"""

    def __init__(self, funding_url: Optional[str] = None, timeout: Optional[float] = None):
        self.funding_url = (funding_url or Config.FUNDING_URL).rstrip("/")
        self.timeout = timeout or Config.FUNDING_TIMEOUT_SECONDS

    def is_available(self) -> bool:
        return bool(Config.FUNDING_ENABLED and self.funding_url)

    async def request_top_up(self, address: str, amount: Decimal) -> List[str]:
        """Ask the funding source for `amount` native tokens; returns funding tx hashes"""
        if not self.is_available():
            logger.warning("⚠️ FUNDING: Funding source disabled - skipping top-up")
            return []

        native = Config.asset_config(Config.NATIVE_ASSET)
        base_units = to_base_units(amount, int(native.get("decimals", 8)))
        url = f"{self.funding_url}/mint"
        params = {"amount": str(base_units), "address": address}

        logger.info(f"💧 FUNDING: Requesting {amount} {Config.NATIVE_ASSET} for {address}")
        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with session.post(url, params=params, timeout=timeout) as response:
                    if response.status not in (200, 201, 202):
                        text = await response.text()
                        logger.error(f"❌ FUNDING: HTTP {response.status}: {text[:200]}")
                        raise LedgerUnavailable(f"Funding source returned HTTP {response.status}")
                    body = await response.json(content_type=None)
        except asyncio.TimeoutError:
            raise TransferTimeout("Funding request timed out")
        except aiohttp.ClientError as e:
            raise LedgerUnavailable(f"Funding source unreachable: {e}")

        hashes = body if isinstance(body, list) else body.get("txn_hashes", []) if isinstance(body, dict) else []
        logger.info(f"✅ FUNDING: Top-up submitted ({len(hashes)} txn)")
        return hashes
