"""
Settlement error taxonomy.

Every error is per-request: raising one means shared state (batch counters,
wallet balance, ledger) is exactly as it was before the failed call.
"""

from typing import Any, Dict, Optional

from .config import ERROR_CODES


class SettlementError(Exception):
    """Base class for all settlement failures."""

    code = "SETTLEMENT_ERROR"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or ERROR_CODES.get(self.code, self.code)
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        return {
            "error_code": self.code,
            "error_message": self.message,
            "details": self.details,
        }


class InsufficientFunds(SettlementError):
    code = "INSUFFICIENT_FUNDS"


class BatchExhausted(SettlementError):
    code = "BATCH_EXHAUSTED"


class BatchNotFound(SettlementError):
    code = "BATCH_NOT_FOUND"


class InvalidBatchConfig(SettlementError):
    code = "INVALID_BATCH_CONFIG"


class AllocationContention(SettlementError):
    code = "ALLOCATION_CONTENTION"


class AlreadyPlayed(SettlementError):
    code = "ALREADY_PLAYED"


class TicketNotFound(SettlementError):
    code = "TICKET_NOT_FOUND"


class TicketClosed(SettlementError):
    code = "TICKET_CLOSED"


class TicketAlreadyUsed(SettlementError):
    code = "TICKET_ALREADY_USED"


class SettlementConflict(SettlementError):
    code = "SETTLEMENT_CONFLICT"


class PaymentFailed(SettlementError):
    """Provider reported a terminal failure. No wallet mutation happened."""
    code = "PAYMENT_FAILED"


class InvalidPaymentRequest(SettlementError):
    code = "INVALID_PAYMENT_REQUEST"


class PaymentNotFound(SettlementError):
    code = "PAYMENT_NOT_FOUND"


class TokenRefreshFailed(SettlementError):
    """Transient: callers may retry with backoff."""
    code = "TOKEN_REFRESH_FAILED"
