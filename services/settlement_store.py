"""
Settlement Record Store

Persistent, transactional home of settlement records. Every status change is
a compare-and-swap UPDATE on the current status (plus any extra guard such as
"proof not yet set" or "transfer claim token matches"), validated by
SettlementStateValidator and recorded in SettlementStatusHistory within the
same transaction. A CAS that matches no row means another caller won.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import (
    FailureCode, PaymentStatus, SettlementDirection, SettlementRecord, SettlementRetryLog,
    SettlementStatus, SettlementStatusHistory, TransferStatus
)
from services.settlement_errors import ForbiddenError, NotFoundError, ValidationError
from utils.settlement_state_validator import SettlementStateValidator, StateTransitionError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SettlementStore:
    """CAS-based persistence for settlement records"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    async def create_record(self, actor: str = "system", **fields) -> SettlementRecord:
        """Insert a record in its direction's initial state"""
        direction = SettlementDirection(fields["direction"])
        initial = SettlementStateValidator.initial_state(direction)
        record = SettlementRecord(
            status=initial.value,
            payment_status=PaymentStatus.PENDING.value,
            transfer_status=TransferStatus.PENDING.value,
            retry_count=0,
            payout_attempts=0,
            simulated=False,
            created_at=utcnow(),
            **fields,
        )
        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.flush()
                session.add(SettlementStatusHistory(
                    record_id=record.id,
                    from_status=None,
                    to_status=initial.value,
                    change_reason="created",
                    actor=actor,
                    changed_at=utcnow(),
                ))
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.error(f"❌ SETTLEMENT_STORE: Duplicate order reference {fields.get('order_reference')}: {e}")
                raise ValidationError(f"Order reference {fields.get('order_reference')} already exists")
        logger.info(f"🆕 SETTLEMENT_CREATED: {record.order_reference} ({direction.value}) -> {initial.value}")
        return record

    async def get(self, record_id: int) -> SettlementRecord:
        async with self.session_factory() as session:
            record = await session.get(SettlementRecord, record_id)
        if record is None:
            raise NotFoundError(f"Settlement record {record_id} not found")
        return record

    async def get_for_owner(self, record_id: int, owner_id: str) -> SettlementRecord:
        """Fetch a record, enforcing that it belongs to owner_id"""
        record = await self.get(record_id)
        if record.owner_id != owner_id:
            logger.warning(f"🚫 SETTLEMENT_ACCESS: {owner_id} attempted to access record {record_id}")
            raise ForbiddenError("Settlement record belongs to another owner")
        return record

    async def get_by_gateway_order(self, gateway_order_id: str) -> SettlementRecord:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SettlementRecord).where(SettlementRecord.gateway_order_id == gateway_order_id)
            )
            record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"No settlement record for gateway order {gateway_order_id}")
        return record

    async def find_by_deposit_hash(self, tx_hash: str) -> Optional[SettlementRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SettlementRecord).where(func.lower(SettlementRecord.deposit_tx_hash) == tx_hash.lower())
            )
            return result.scalar_one_or_none()

    async def find_by_transfer_hash(self, tx_hash: str) -> Optional[SettlementRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SettlementRecord).where(func.lower(SettlementRecord.transfer_hash) == tx_hash.lower())
            )
            return result.scalars().first()

    async def history(self, record_id: int) -> List[SettlementStatusHistory]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SettlementStatusHistory)
                .where(SettlementStatusHistory.record_id == record_id)
                .order_by(SettlementStatusHistory.id)
            )
            return list(result.scalars().all())

    async def retry_logs(self, record_id: int) -> List[SettlementRetryLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SettlementRetryLog)
                .where(SettlementRetryLog.record_id == record_id)
                .order_by(SettlementRetryLog.id)
            )
            return list(result.scalars().all())

    async def list_records(
        self,
        owner_id: str,
        status: Optional[str] = None,
        direction: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[SettlementRecord], int]:
        """Owner's records, newest first, with the total count for pagination"""
        conditions = [SettlementRecord.owner_id == owner_id]
        if status:
            conditions.append(SettlementRecord.status == status)
        if direction:
            conditions.append(SettlementRecord.direction == direction)

        async with self.session_factory() as session:
            total = await session.scalar(select(func.count(SettlementRecord.id)).where(*conditions))
            result = await session.execute(
                select(SettlementRecord)
                .where(*conditions)
                .order_by(SettlementRecord.created_at.desc(), SettlementRecord.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(result.scalars().all()), int(total or 0)

    async def owner_stats(self, owner_id: str) -> Dict[str, Any]:
        """Counts per direction/status and settled volume per direction"""
        async with self.session_factory() as session:
            counts = await session.execute(
                select(SettlementRecord.direction, SettlementRecord.status, func.count(SettlementRecord.id))
                .where(SettlementRecord.owner_id == owner_id)
                .group_by(SettlementRecord.direction, SettlementRecord.status)
            )
            volumes = await session.execute(
                select(
                    SettlementRecord.direction,
                    func.coalesce(func.sum(SettlementRecord.amount_fiat), 0),
                    func.coalesce(func.sum(SettlementRecord.amount_token), 0),
                )
                .where(
                    SettlementRecord.owner_id == owner_id,
                    SettlementRecord.status == SettlementStatus.COMPLETED.value,
                )
                .group_by(SettlementRecord.direction)
            )

            stats: Dict[str, Any] = {}
            for direction in SettlementDirection:
                stats[direction.value] = {
                    "total": 0,
                    "by_status": {},
                    "completed_fiat": "0",
                    "completed_token": "0",
                }
            for direction, status, count in counts.all():
                bucket = stats[direction]
                bucket["by_status"][status] = count
                bucket["total"] += count
            for direction, fiat_sum, token_sum in volumes.all():
                stats[direction]["completed_fiat"] = str(Decimal(str(fiat_sum)))
                stats[direction]["completed_token"] = str(Decimal(str(token_sum)))
        return stats

    async def find_by_status(
        self, status: SettlementStatus, direction: SettlementDirection, limit: int = 50
    ) -> List[SettlementRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SettlementRecord)
                .where(
                    SettlementRecord.status == status.value,
                    SettlementRecord.direction == direction.value,
                )
                .order_by(SettlementRecord.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def find_stale_claims(self, ttl_seconds: int, limit: int = 50) -> List[SettlementRecord]:
        """PAYMENT_VERIFIED records whose transfer claim outlived its TTL"""
        cutoff = utcnow() - timedelta(seconds=ttl_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                select(SettlementRecord)
                .where(
                    SettlementRecord.status == SettlementStatus.PAYMENT_VERIFIED.value,
                    SettlementRecord.transfer_claim_token.is_not(None),
                    SettlementRecord.transfer_claimed_at < cutoff,
                )
                .order_by(SettlementRecord.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Compare-and-swap transitions
    # ------------------------------------------------------------------

    async def _cas(
        self,
        session: AsyncSession,
        record_id: int,
        conditions: list,
        values: Dict[str, Any],
    ) -> bool:
        stmt = (
            update(SettlementRecord)
            .where(SettlementRecord.id == record_id, *conditions)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def transition(
        self,
        record_id: int,
        expected: SettlementStatus,
        new: SettlementStatus,
        reason: str,
        actor: str = "system",
        retry: bool = False,
        values: Optional[Dict[str, Any]] = None,
        conditions: Optional[list] = None,
        metadata_updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[SettlementRecord]:
        """
        Move a record from expected to new if and only if it is still in expected.

        Returns the refreshed record, or None when the CAS lost (the record
        was no longer in the expected state or an extra condition failed).
        Raises StateTransitionError if expected -> new is not a legal edge.
        """
        async with self.session_factory() as session:
            record = await session.get(SettlementRecord, record_id)
            if record is None:
                raise NotFoundError(f"Settlement record {record_id} not found")

            SettlementStateValidator.validate_and_transition(
                record.direction, expected, new, record_ref=record.order_reference, retry=retry
            )

            update_values = dict(values or {})
            if new != expected:
                update_values["status"] = new.value
            if metadata_updates:
                merged = dict(record.record_metadata or {})
                merged.update(metadata_updates)
                update_values["record_metadata"] = merged

            won = await self._cas(
                session,
                record_id,
                [SettlementRecord.status == expected.value, *(conditions or [])],
                update_values,
            )
            if not won:
                await session.rollback()
                logger.info(
                    f"⚖️ SETTLEMENT_CAS_LOST: {record.order_reference} expected {expected.value}, "
                    f"wanted {new.value}"
                )
                return None

            if new != expected:
                session.add(SettlementStatusHistory(
                    record_id=record_id,
                    from_status=expected.value,
                    to_status=new.value,
                    change_reason=reason[:255],
                    actor=actor,
                    changed_at=utcnow(),
                ))
            await session.commit()

        logger.info(f"🔄 SETTLEMENT_TRANSITION: record {record_id} {expected.value} -> {new.value} ({reason})")
        return await self.get(record_id)

    async def require_transition(self, record_id: int, expected: SettlementStatus,
                                 new: SettlementStatus, reason: str, **kwargs) -> SettlementRecord:
        """transition() that raises when the CAS loses"""
        record = await self.transition(record_id, expected, new, reason, **kwargs)
        if record is None:
            current = await self.get(record_id)
            raise StateTransitionError(
                f"Record is {current.status}, expected {expected.value}; cannot move to {new.value}"
            )
        return record

    # ------------------------------------------------------------------
    # On-ramp helpers
    # ------------------------------------------------------------------

    async def claim_payment_proof(self, record_id: int, proof_id: str, signature: str,
                                  actor: str = "system") -> Optional[SettlementRecord]:
        """CREATED -> PAYMENT_VERIFIED, only while no proof has been stored"""
        return await self.transition(
            record_id,
            SettlementStatus.CREATED,
            SettlementStatus.PAYMENT_VERIFIED,
            reason="payment proof verified",
            actor=actor,
            values={
                "payment_proof_id": proof_id,
                "payment_signature": signature,
                "payment_status": PaymentStatus.SUCCESS.value,
                "proof_verified_at": utcnow(),
            },
            conditions=[SettlementRecord.payment_proof_id.is_(None)],
        )

    async def mark_payment_rejected(self, record_id: int, reason: str,
                                    actor: str = "system") -> Optional[SettlementRecord]:
        """CREATED -> FAILED after a signature mismatch"""
        return await self.transition(
            record_id,
            SettlementStatus.CREATED,
            SettlementStatus.FAILED,
            reason="payment proof rejected",
            actor=actor,
            values={
                "payment_status": PaymentStatus.FAILED.value,
                "failure_code": FailureCode.SIGNATURE_MISMATCH.value,
                "failure_reason": reason,
            },
            conditions=[SettlementRecord.payment_proof_id.is_(None)],
        )

    async def acquire_transfer_claim(self, record_id: int, expected: SettlementStatus,
                                     ttl_seconds: int) -> Optional[str]:
        """
        Single-flight claim for running a transfer on a record.

        Succeeds when the record is in `expected` and either unclaimed or the
        previous claim is older than ttl_seconds. Returns the claim token or None.
        """
        token = uuid.uuid4().hex
        now = utcnow()
        cutoff = now - timedelta(seconds=ttl_seconds)
        async with self.session_factory() as session:
            won = await self._cas(
                session,
                record_id,
                [
                    SettlementRecord.status == expected.value,
                    or_(
                        SettlementRecord.transfer_claim_token.is_(None),
                        SettlementRecord.transfer_claimed_at < cutoff,
                    ),
                ],
                {"transfer_claim_token": token, "transfer_claimed_at": now},
            )
            if not won:
                await session.rollback()
                return None
            await session.commit()
        logger.info(f"🔒 TRANSFER_CLAIM: record {record_id} claimed ({token[:8]})")
        return token

    async def refresh_transfer_claim(self, record_id: int, claim_token: str) -> bool:
        """Restart the claim TTL; False when another holder has taken the claim over"""
        async with self.session_factory() as session:
            won = await self._cas(
                session,
                record_id,
                [SettlementRecord.transfer_claim_token == claim_token],
                {"transfer_claimed_at": utcnow()},
            )
            if not won:
                await session.rollback()
                return False
            await session.commit()
        return True

    async def record_pending_transfer(self, record_id: int, claim_token: str, tx_hash: str,
                                      expires_at: datetime) -> bool:
        """
        Remember a submitted ledger transaction before waiting for finality.

        The hash survives a failed finality wait and is only cleared when the
        record completes.
        """
        async with self.session_factory() as session:
            won = await self._cas(
                session,
                record_id,
                [
                    SettlementRecord.transfer_claim_token == claim_token,
                    SettlementRecord.transfer_hash.is_(None),
                ],
                {
                    "pending_transfer_hash": tx_hash,
                    "pending_transfer_expires_at": expires_at,
                    "transfer_status": TransferStatus.PENDING.value,
                    "transfer_claimed_at": utcnow(),
                },
            )
            if not won:
                await session.rollback()
                return False
            await session.commit()
        logger.info(f"📤 TRANSFER_SUBMITTED: record {record_id} pending {tx_hash}")
        return True

    async def complete_transfer(
        self,
        record_id: int,
        claim_token: str,
        expected: SettlementStatus,
        transfer_hash: str,
        explorer_reference: Optional[str],
        simulated: bool,
        retry: bool = False,
        metadata_updates: Optional[Dict[str, Any]] = None,
        actor: str = "system",
    ) -> Optional[SettlementRecord]:
        """PAYMENT_VERIFIED (or FAILED on retry) -> COMPLETED for the claim holder"""
        values = {
            "transfer_hash": transfer_hash,
            "explorer_reference": explorer_reference,
            "simulated": simulated,
            "transfer_status": TransferStatus.SUCCESS.value,
            "settled_at": utcnow(),
            "failure_code": None,
            "failure_reason": None,
            "transfer_claim_token": None,
            "transfer_claimed_at": None,
            "pending_transfer_hash": None,
            "pending_transfer_expires_at": None,
        }
        if retry:
            values["retry_count"] = SettlementRecord.retry_count + 1
        return await self.transition(
            record_id,
            expected,
            SettlementStatus.COMPLETED,
            reason="transfer retried successfully" if retry else "transfer completed",
            actor=actor,
            retry=retry,
            values=values,
            conditions=[SettlementRecord.transfer_claim_token == claim_token],
            metadata_updates=metadata_updates,
        )

    async def fail_transfer(
        self,
        record_id: int,
        claim_token: Optional[str],
        expected: SettlementStatus,
        failure_code: str,
        failure_reason: str,
        retry: bool = False,
        metadata_updates: Optional[Dict[str, Any]] = None,
        actor: str = "system",
    ) -> Optional[SettlementRecord]:
        """
        Record a transfer failure.

        From PAYMENT_VERIFIED this is the FAILED transition. A failed retry
        (expected FAILED) keeps the status and only refreshes failure details.
        """
        values = {
            "transfer_status": TransferStatus.FAILED.value,
            "failure_code": failure_code,
            "failure_reason": failure_reason,
            "transfer_claim_token": None,
            "transfer_claimed_at": None,
        }
        if retry:
            values["retry_count"] = SettlementRecord.retry_count + 1
        conditions = []
        if claim_token is not None:
            conditions.append(SettlementRecord.transfer_claim_token == claim_token)
        if expected == SettlementStatus.FAILED:
            return await self._update_failed(record_id, values, conditions, metadata_updates)
        return await self.transition(
            record_id,
            expected,
            SettlementStatus.FAILED,
            reason=f"transfer failed: {failure_code}",
            actor=actor,
            values=values,
            conditions=conditions,
            metadata_updates=metadata_updates,
        )

    async def _update_failed(self, record_id: int, values: Dict[str, Any], conditions: list,
                             metadata_updates: Optional[Dict[str, Any]]) -> Optional[SettlementRecord]:
        async with self.session_factory() as session:
            record = await session.get(SettlementRecord, record_id)
            if record is None:
                raise NotFoundError(f"Settlement record {record_id} not found")
            if metadata_updates:
                merged = dict(record.record_metadata or {})
                merged.update(metadata_updates)
                values = dict(values, record_metadata=merged)
            won = await self._cas(
                session, record_id,
                [SettlementRecord.status == SettlementStatus.FAILED.value, *conditions],
                values,
            )
            if not won:
                await session.rollback()
                return None
            await session.commit()
        logger.info(f"🔁 SETTLEMENT_RETRY_FAILED: record {record_id} stays failed ({values['failure_code']})")
        return await self.get(record_id)

    async def release_stale_claim(self, record_id: int, claim_token: str, reason: str) -> Optional[SettlementRecord]:
        """PAYMENT_VERIFIED -> FAILED/TIMEOUT for a claim that was never resolved"""
        return await self.fail_transfer(
            record_id,
            claim_token,
            SettlementStatus.PAYMENT_VERIFIED,
            FailureCode.TIMEOUT.value,
            reason,
            actor="system",
        )

    async def add_retry_log(
        self,
        record_id: int,
        retry_attempt: int,
        succeeded: bool,
        failure_code: Optional[str] = None,
        failure_reason: Optional[str] = None,
        transfer_hash: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ):
        async with self.session_factory() as session:
            session.add(SettlementRetryLog(
                record_id=record_id,
                retry_attempt=retry_attempt,
                succeeded=succeeded,
                failure_code=failure_code,
                failure_reason=failure_reason,
                transfer_hash=transfer_hash,
                duration_ms=duration_ms,
                attempted_at=utcnow(),
            ))
            await session.commit()

    # ------------------------------------------------------------------
    # Off-ramp helpers
    # ------------------------------------------------------------------

    async def mark_deposit_verified(
        self,
        record_id: int,
        tx_hash: str,
        verification_method: str,
        metadata_updates: Optional[Dict[str, Any]] = None,
        actor: str = "system",
    ) -> Optional[SettlementRecord]:
        """WITHDRAWAL_REQUESTED -> DEPOSIT_VERIFIED; a deposit hash backs one withdrawal only"""
        try:
            return await self.transition(
                record_id,
                SettlementStatus.WITHDRAWAL_REQUESTED,
                SettlementStatus.DEPOSIT_VERIFIED,
                reason=f"deposit verified ({verification_method})",
                actor=actor,
                values={
                    "deposit_tx_hash": tx_hash,
                    "verification_method": verification_method,
                    "deposit_verified_at": utcnow(),
                    "transfer_status": TransferStatus.SUCCESS.value,
                },
                metadata_updates=metadata_updates,
            )
        except IntegrityError:
            raise ValidationError("This deposit transaction has already been used for another withdrawal")

    async def increment_payout_attempts(self, record_id: int, failure_reason: Optional[str] = None):
        async with self.session_factory() as session:
            await self._cas(
                session,
                record_id,
                [SettlementRecord.status == SettlementStatus.DEPOSIT_VERIFIED.value],
                {
                    "payout_attempts": SettlementRecord.payout_attempts + 1,
                    "failure_code": FailureCode.PAYOUT_FAILED.value if failure_reason else None,
                    "failure_reason": failure_reason,
                },
            )
            await session.commit()
