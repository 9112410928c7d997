"""
Settlement Audit Logger
Structured audit events for every financially relevant settlement step
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("settlement.audit")


class SettlementEventType(Enum):
    """Types of settlement events"""

    # On-ramp
    ONRAMP_ORDER_CREATED = "onramp_order_created"
    ONRAMP_PAYMENT_VERIFIED = "onramp_payment_verified"
    ONRAMP_PAYMENT_REJECTED = "onramp_payment_rejected"
    ONRAMP_PAYMENT_DUPLICATE = "onramp_payment_duplicate"
    ONRAMP_TRANSFER_COMPLETED = "onramp_transfer_completed"
    ONRAMP_TRANSFER_FAILED = "onramp_transfer_failed"
    ONRAMP_TRANSFER_RETRIED = "onramp_transfer_retried"
    ONRAMP_CLAIM_RECOVERED = "onramp_claim_recovered"

    # Off-ramp
    OFFRAMP_WITHDRAWAL_CREATED = "offramp_withdrawal_created"
    OFFRAMP_DEPOSIT_VERIFIED = "offramp_deposit_verified"
    OFFRAMP_PAYOUT_INITIATED = "offramp_payout_initiated"
    OFFRAMP_PAYOUT_COMPLETED = "offramp_payout_completed"
    OFFRAMP_PAYOUT_FAILED = "offramp_payout_failed"

    # Shared
    SETTLEMENT_CANCELLED = "settlement_cancelled"
    WEBHOOK_RECEIVED = "webhook_received"


@dataclass
class SettlementContext:
    """Amounts attached to an audit event"""
    amount_fiat: Optional[Decimal] = None
    amount_token: Optional[Decimal] = None
    fiat_currency: Optional[str] = None
    asset_type: Optional[str] = None
    conversion_rate: Optional[Decimal] = None
    fee_amount: Optional[Decimal] = None

    @classmethod
    def from_record(cls, record) -> "SettlementContext":
        return cls(
            amount_fiat=record.amount_fiat,
            amount_token=record.amount_token,
            fiat_currency=record.fiat_currency,
            asset_type=record.asset_type,
            conversion_rate=record.conversion_rate,
            fee_amount=record.platform_fee,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for key, value in self.__dict__.items():
            if value is not None:
                result[key] = str(value) if isinstance(value, Decimal) else value
        return result


class SettlementAuditLogger:
    """Emits sanitized settlement audit events on the settlement.audit logger"""

    SENSITIVE_FIELDS = {
        'password', 'secret', 'private', 'signature', 'credential',
        'bank_account', 'account_number', 'ifsc', 'email', 'phone',
    }

    def _sanitize(self, data: Any) -> Any:
        if data is None:
            return None
        if isinstance(data, dict):
            sanitized = {}
            for key, value in data.items():
                key_str = str(key)
                if any(sensitive in key_str.lower() for sensitive in self.SENSITIVE_FIELDS):
                    sanitized[key_str] = '[REDACTED]'
                else:
                    sanitized[key_str] = self._sanitize(value)
            return sanitized
        if isinstance(data, (list, tuple)):
            return [self._sanitize(item) for item in list(data)[:10]]
        if isinstance(data, Decimal):
            return str(data)
        if isinstance(data, datetime):
            return data.isoformat()
        if isinstance(data, (str, int, float, bool)):
            return data
        return type(data).__name__

    def log_event(
        self,
        event_type: SettlementEventType,
        record=None,
        owner_id: Optional[str] = None,
        previous_state: Optional[str] = None,
        new_state: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Emit one audit event.

        Args:
            event_type: Type of settlement event
            record: SettlementRecord the event is about (optional)
            owner_id: Owner the event is attributed to, defaults to the record owner
            previous_state: Status before the event
            new_state: Status after the event
            additional_data: Extra context, sanitized before logging

        Returns:
            Event ID for correlation
        """
        event_id = str(uuid.uuid4())
        payload = {
            "event_id": event_id,
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "owner_id": owner_id or (record.owner_id if record is not None else None),
            "previous_state": previous_state,
            "new_state": new_state or (record.status if record is not None else None),
        }
        if record is not None:
            payload["record_id"] = record.id
            payload["order_reference"] = record.order_reference
            payload["direction"] = record.direction
            payload["context"] = SettlementContext.from_record(record).to_dict()
        if additional_data:
            payload["data"] = self._sanitize(additional_data)

        try:
            audit_logger.info(
                f"📒 SETTLEMENT_AUDIT: {event_type.value} "
                f"{payload.get('order_reference', '')} {previous_state or ''}->{payload['new_state'] or ''}",
                extra={"audit": payload},
            )
        except Exception as e:
            # Audit emission must never break the settlement path
            logger.error(f"Failed to emit settlement audit event {event_type.value}: {e}")
        return event_id


settlement_audit_logger = SettlementAuditLogger()
