"""
Settlement error taxonomy.

Every failure the pipeline can surface is a SettlementError carrying a stable
code, whether the caller may retry, and the HTTP status the API maps it to.
"""

from typing import Optional


class SettlementError(Exception):
    """Base class for settlement errors"""
    code = "SETTLEMENT_ERROR"
    retryable = False
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error_code": self.code,
            "error": self.message,
            "retryable": self.retryable,
        }


class ValidationError(SettlementError):
    """Malformed input, out-of-range amount or disallowed state"""
    code = "VALIDATION_ERROR"
    http_status = 400


class SignatureMismatch(SettlementError):
    """Payment proof signature did not verify"""
    code = "SIGNATURE_MISMATCH"
    http_status = 400


class InsufficientBalance(SettlementError):
    """Signer balance still short after a funding top-up"""
    code = "INSUFFICIENT_BALANCE"
    retryable = True
    http_status = 502


class LedgerUnavailable(SettlementError):
    """Ledger node unreachable or returned an unexpected response"""
    code = "LEDGER_UNAVAILABLE"
    retryable = True
    http_status = 503


class SimulationRejected(SettlementError):
    """Dry-run of the transfer failed; nothing was submitted"""
    code = "SIMULATION_REJECTED"
    http_status = 502


class TransactionFailed(SettlementError):
    """Transaction committed but did not succeed on the ledger"""
    code = "TRANSACTION_FAILED"
    http_status = 502


class TransferTimeout(SettlementError):
    """A transfer step exceeded its time budget"""
    code = "TIMEOUT"
    retryable = True
    http_status = 504


class SignerBusy(SettlementError):
    """The signer work queue is full or another process holds the signer lease"""
    code = "SIGNER_BUSY"
    retryable = True
    http_status = 503


class ClaimLost(SettlementError):
    """Another holder took over the transfer claim before submission"""
    code = "CLAIM_LOST"
    retryable = True
    http_status = 409


class GatewayError(SettlementError):
    """Payment gateway call failed"""
    code = "GATEWAY_ERROR"
    retryable = True
    http_status = 502


class PayoutError(SettlementError):
    """Bank payout provider call failed"""
    code = "PAYOUT_FAILED"
    retryable = True
    http_status = 502


class NotFoundError(SettlementError):
    """Unknown settlement record"""
    code = "NOT_FOUND"
    http_status = 404


class ForbiddenError(SettlementError):
    """Record belongs to another owner"""
    code = "FORBIDDEN"
    http_status = 403
