"""
Ramp Settlement Service - Database Schema
=========================================

Settlement records for both ramp directions plus their audit trail:
- SettlementRecord: one per on-ramp order or off-ramp withdrawal
- SettlementStatusHistory: one row per status transition
- SettlementRetryLog: one row per transfer retry attempt

Amounts are stored as Numeric(38, 18) and handled as Decimal throughout.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint, func, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class SettlementDirection(Enum):
    """Which way value flows"""
    ON_RAMP = "on_ramp"
    OFF_RAMP = "off_ramp"


class SettlementStatus(Enum):
    """Settlement lifecycle states for both directions"""
    # On-ramp
    CREATED = "created"
    PAYMENT_VERIFIED = "payment_verified"
    # Off-ramp
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    DEPOSIT_VERIFIED = "deposit_verified"
    PAYOUT_INITIATED = "payout_initiated"
    # Shared
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentStatus(Enum):
    """Sub-status for the fiat payment leg"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class TransferStatus(Enum):
    """Sub-status for the ledger transfer leg"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class VerificationMethod(Enum):
    """How an off-ramp deposit was accepted"""
    LEDGER_CONFIRMED = "ledger_confirmed"
    DEMO_ACCEPTED = "demo_accepted"


class FailureCode(Enum):
    """Persisted failure codes"""
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    SIMULATION_REJECTED = "SIMULATION_REJECTED"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    TIMEOUT = "TIMEOUT"
    SIGNER_BUSY = "SIGNER_BUSY"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    PAYOUT_FAILED = "PAYOUT_FAILED"
    CLAIM_LOST = "CLAIM_LOST"


# ============================================================================
# SETTLEMENT RECORDS
# ============================================================================

class SettlementRecord(Base):
    """
    One on-ramp order or off-ramp withdrawal.

    Status changes go through SettlementStore, which applies them as
    compare-and-swap updates and writes SettlementStatusHistory rows.
    """
    __tablename__ = "settlement_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_reference = Column(String(64), unique=True, nullable=False, index=True)
    owner_id = Column(String(128), nullable=False, index=True)
    direction = Column(String(16), nullable=False)

    # Amounts (immutable after creation)
    amount_fiat = Column(Numeric(38, 18), nullable=False)
    amount_token = Column(Numeric(38, 18), nullable=False)
    fiat_currency = Column(String(8), nullable=False)
    asset_type = Column(String(16), nullable=False)
    conversion_rate = Column(Numeric(38, 18), nullable=False)
    wallet_address = Column(String(128), nullable=True)

    # Fees
    gateway_fee = Column(Numeric(38, 18), nullable=False, default=0)
    network_fee = Column(Numeric(38, 18), nullable=False, default=0)
    platform_fee = Column(Numeric(38, 18), nullable=False, default=0)
    net_fiat = Column(Numeric(38, 18), nullable=True)

    # Status
    status = Column(String(32), nullable=False, index=True)
    payment_status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value)
    transfer_status = Column(String(16), nullable=False, default=TransferStatus.PENDING.value)

    # On-ramp payment proof (set once)
    gateway_order_id = Column(String(128), nullable=True, index=True)
    payment_proof_id = Column(String(128), nullable=True)
    payment_signature = Column(String(256), nullable=True)

    # Ledger transfer. pending_transfer_hash is set on submission and cleared on
    # completion; retries reconcile against it before submitting again.
    transfer_hash = Column(String(128), nullable=True)
    pending_transfer_hash = Column(String(128), nullable=True)
    pending_transfer_expires_at = Column(DateTime(timezone=True), nullable=True)
    explorer_reference = Column(String(512), nullable=True)
    simulated = Column(Boolean, nullable=False, default=False)

    # Off-ramp deposit and payout
    bank_account_ref = Column(String(128), nullable=True)
    deposit_tx_hash = Column(String(128), nullable=True, unique=True)
    verification_method = Column(String(32), nullable=True)
    payout_reference = Column(String(128), nullable=True)
    payout_attempts = Column(Integer, nullable=False, default=0)

    # Failure details
    failure_code = Column(String(32), nullable=True)
    failure_reason = Column(Text, nullable=True)

    # Retry and single-flight claim
    retry_count = Column(Integer, nullable=False, default=0)
    transfer_claim_token = Column(String(64), nullable=True)
    transfer_claimed_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    proof_verified_at = Column(DateTime(timezone=True), nullable=True)
    deposit_verified_at = Column(DateTime(timezone=True), nullable=True)
    payout_initiated_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Client info, notes, retry and cancellation audit flags
    record_metadata = Column(JSON, nullable=True)

    status_history = relationship(
        "SettlementStatusHistory", back_populates="record", order_by="SettlementStatusHistory.id"
    )

    __table_args__ = (
        Index('ix_settlement_owner_created', 'owner_id', 'created_at'),
        Index('ix_settlement_status_direction', 'status', 'direction'),
        CheckConstraint('amount_fiat > 0', name='ck_settlement_amount_fiat_positive'),
        CheckConstraint('amount_token > 0', name='ck_settlement_amount_token_positive'),
        CheckConstraint("direction IN ('on_ramp', 'off_ramp')", name='ck_settlement_direction'),
    )

    def to_dict(self) -> dict:
        """Public representation of the record"""
        def _num(value):
            return str(value) if value is not None else None

        def _ts(value):
            return value.isoformat() if value is not None else None

        return {
            "id": self.id,
            "order_reference": self.order_reference,
            "direction": self.direction,
            "status": self.status,
            "payment_status": self.payment_status,
            "transfer_status": self.transfer_status,
            "amount_fiat": _num(self.amount_fiat),
            "amount_token": _num(self.amount_token),
            "fiat_currency": self.fiat_currency,
            "asset_type": self.asset_type,
            "conversion_rate": _num(self.conversion_rate),
            "wallet_address": self.wallet_address,
            "fees": {
                "gateway": _num(self.gateway_fee),
                "network": _num(self.network_fee),
                "platform": _num(self.platform_fee),
            },
            "net_fiat": _num(self.net_fiat),
            "gateway_order_id": self.gateway_order_id,
            "payment_proof_id": self.payment_proof_id,
            "transfer_hash": self.transfer_hash,
            "pending_transfer_hash": self.pending_transfer_hash,
            "explorer_reference": self.explorer_reference,
            "simulated": bool(self.simulated),
            "bank_account_ref": self.bank_account_ref,
            "deposit_tx_hash": self.deposit_tx_hash,
            "verification_method": self.verification_method,
            "payout_reference": self.payout_reference,
            "failure_code": self.failure_code,
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
            "created_at": _ts(self.created_at),
            "proof_verified_at": _ts(self.proof_verified_at),
            "deposit_verified_at": _ts(self.deposit_verified_at),
            "payout_initiated_at": _ts(self.payout_initiated_at),
            "settled_at": _ts(self.settled_at),
            "cancelled_at": _ts(self.cancelled_at),
            "metadata": self.record_metadata or {},
        }

    def __repr__(self):
        return f"<SettlementRecord(id={self.id}, ref={self.order_reference}, status={self.status})>"


class SettlementStatusHistory(Base):
    """Audit trail for every settlement status change"""
    __tablename__ = "settlement_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(Integer, ForeignKey("settlement_records.id"), nullable=False, index=True)

    from_status = Column(String(32), nullable=True)  # null for the initial row
    to_status = Column(String(32), nullable=False)
    change_reason = Column(String(255), nullable=False)
    actor = Column(String(128), nullable=False, default="system")

    changed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    record = relationship("SettlementRecord", back_populates="status_history")

    __table_args__ = (
        Index('ix_settlement_history_changed_at', 'changed_at'),
    )

    def __repr__(self):
        return f"<SettlementStatusHistory(record_id={self.record_id}, {self.from_status} -> {self.to_status})>"


class SettlementRetryLog(Base):
    """One row per transfer retry attempt"""
    __tablename__ = "settlement_retry_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(Integer, ForeignKey("settlement_records.id"), nullable=False, index=True)
    retry_attempt = Column(Integer, nullable=False)
    succeeded = Column(Boolean, nullable=False, default=False)
    failure_code = Column(String(32), nullable=True)
    failure_reason = Column(Text, nullable=True)
    transfer_hash = Column(String(128), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    attempted_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<SettlementRetryLog(record_id={self.record_id}, attempt={self.retry_attempt}, ok={self.succeeded})>"


# ============================================================================
# SIGNER LEASES
# ============================================================================

class SignerLease(Base):
    """
    Database-backed lease on a signer account.

    Every worker process sequences its own transfers through SignerWorkQueue;
    the lease extends that to one writer per signer across processes. A lease
    past expires_at may be taken over by another holder.
    """
    __tablename__ = "signer_leases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signer_address = Column(String(128), unique=True, nullable=False)
    holder_token = Column(String(64), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('ix_signer_leases_expires_at', 'expires_at'),
    )

    def __repr__(self):
        return f"<SignerLease(signer={self.signer_address}, expires_at={self.expires_at})>"
