"""
Bank payout for off-ramp withdrawals.

DEPOSIT_VERIFIED -> PAYOUT_INITIATED (provider accepted the payout) ->
COMPLETED (provider confirmed the bank transfer). The provider is selected
by PAYOUT_PROVIDER; the bundled one simulates a bank rail.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from config import Config
from models import PaymentStatus, SettlementDirection, SettlementRecord, SettlementStatus
from services.settlement_errors import PayoutError, ValidationError
from services.settlement_store import SettlementStore

logger = logging.getLogger(__name__)


class PayoutProvider:
    """Interface for bank payout rails"""
    name = "base"

    async def initiate(self, record: SettlementRecord) -> Dict[str, Any]:
        raise NotImplementedError

    async def confirm(self, record: SettlementRecord) -> Dict[str, Any]:
        raise NotImplementedError


class SimulatedBankPayoutProvider(PayoutProvider):
    """Issues synthetic payout references; no money moves"""
    name = "simulated"

    async def initiate(self, record: SettlementRecord) -> Dict[str, Any]:
        expected = datetime.now(timezone.utc) + timedelta(days=Config.PAYOUT_EXPECTED_DAYS)
        return {
            "payout_reference": f"pout_{secrets.token_hex(7)}",
            "expected_completion": expected.isoformat(),
        }

    async def confirm(self, record: SettlementRecord) -> Dict[str, Any]:
        return {
            "payment_id": f"pay_{secrets.token_hex(7)}",
            "order_id": f"order_{secrets.token_hex(7)}",
            "transferred_at": datetime.now(timezone.utc).isoformat(),
        }


PAYOUT_PROVIDERS = {
    SimulatedBankPayoutProvider.name: SimulatedBankPayoutProvider,
}


def build_payout_provider(name: Optional[str] = None) -> PayoutProvider:
    name = (name or Config.PAYOUT_PROVIDER).lower()
    provider_cls = PAYOUT_PROVIDERS.get(name)
    if provider_cls is None:
        raise ValueError(f"Unknown payout provider: {name}")
    return provider_cls()


class PayoutService:
    """Moves verified withdrawals through payout"""

    def __init__(self, store: SettlementStore, provider: Optional[PayoutProvider] = None):
        self.store = store
        self.provider = provider or build_payout_provider()

    async def initiate(self, record: SettlementRecord, actor: str = "system") -> SettlementRecord:
        if record.direction != SettlementDirection.OFF_RAMP.value:
            raise ValidationError("Payouts only apply to off-ramp withdrawals")
        if record.status != SettlementStatus.DEPOSIT_VERIFIED.value:
            raise ValidationError(f"Withdrawal is {record.status}; payout cannot be initiated")

        try:
            payout = await self.provider.initiate(record)
        except PayoutError as e:
            await self.store.increment_payout_attempts(record.id, e.message)
            raise
        except Exception as e:
            logger.error(f"❌ PAYOUT_INITIATE: {record.order_reference} provider error: {e}")
            await self.store.increment_payout_attempts(record.id, str(e))
            raise PayoutError(f"Payout provider failed: {e}")

        updated = await self.store.transition(
            record.id,
            SettlementStatus.DEPOSIT_VERIFIED,
            SettlementStatus.PAYOUT_INITIATED,
            reason=f"payout initiated via {self.provider.name}",
            actor=actor,
            values={
                "payout_reference": payout["payout_reference"],
                "payout_initiated_at": datetime.now(timezone.utc),
                "payment_status": PaymentStatus.PENDING.value,
                "payout_attempts": SettlementRecord.payout_attempts + 1,
                "failure_code": None,
                "failure_reason": None,
            },
            metadata_updates={"expected_payout_completion": payout.get("expected_completion")},
        )
        if updated is None:
            # Another worker initiated it first
            return await self.store.get(record.id)
        logger.info(f"🏦 PAYOUT_INITIATED: {record.order_reference} ref={payout['payout_reference']}")
        return updated

    async def confirm(self, record: SettlementRecord, actor: str = "system") -> SettlementRecord:
        """Confirm the bank transfer, initiating the payout first if still pending"""
        if record.direction != SettlementDirection.OFF_RAMP.value:
            raise ValidationError("Payouts only apply to off-ramp withdrawals")
        if record.status == SettlementStatus.DEPOSIT_VERIFIED.value:
            record = await self.initiate(record, actor=actor)
        if record.status != SettlementStatus.PAYOUT_INITIATED.value:
            raise ValidationError(f"Withdrawal is {record.status}; payout cannot be confirmed")

        try:
            confirmation = await self.provider.confirm(record)
        except PayoutError:
            raise
        except Exception as e:
            logger.error(f"❌ PAYOUT_CONFIRM: {record.order_reference} provider error: {e}")
            raise PayoutError(f"Payout provider failed: {e}")

        updated = await self.store.require_transition(
            record.id,
            SettlementStatus.PAYOUT_INITIATED,
            SettlementStatus.COMPLETED,
            reason="payout confirmed",
            actor=actor,
            values={
                "payment_status": PaymentStatus.SUCCESS.value,
                "settled_at": datetime.now(timezone.utc),
            },
            metadata_updates={"payout_confirmation": confirmation},
        )
        logger.info(f"💰 PAYOUT_COMPLETED: {record.order_reference} net {record.net_fiat} {record.fiat_currency}")
        return updated
