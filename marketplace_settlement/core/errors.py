"""
Exception classes for the settlement core.

Every error carries:
1. A stable error code (for API clients)
2. An HTTP status used by the API layer
3. Structured details so callers can correct their input

Validation errors are raised before any state is touched. InvalidState is an
internal fault (a race or a programming error), never a user error.
"""
from enum import Enum
from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base exception for all settlement errors."""

    error_code = "settlement_error"
    http_status = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
                "details": self.details,
            }
        }


# ============================================================================
# VALIDATION ERRORS
# ============================================================================


class InvalidAmount(SettlementError):
    """Amount is negative, zero where a positive value is required, or not an integer."""

    error_code = "invalid_amount"
    http_status = 400


class InvalidPercentage(SettlementError):
    """Percentage outside [0, 100]."""

    error_code = "invalid_percentage"
    http_status = 400


class InsufficientBalance(SettlementError):
    error_code = "insufficient_balance"
    http_status = 400


class BelowMinimumThreshold(SettlementError):
    error_code = "below_minimum_threshold"
    http_status = 400


class SellerNotPayable(SettlementError):
    """Seller has no usable external account for charges or payouts."""

    error_code = "seller_not_payable"
    http_status = 400


# ============================================================================
# NOTIFICATION ERRORS
# ============================================================================


class InvalidSignature(SettlementError):
    """Webhook signature did not verify. The payload must not be trusted."""

    error_code = "invalid_signature"
    http_status = 400


class MalformedNotification(SettlementError):
    """Verified payload that cannot be interpreted. Acknowledged, never retried."""

    error_code = "malformed_notification"
    http_status = 200


class DuplicateNotification(SettlementError):
    """
    Notification already applied.

    Logged as informational and answered as success; never surfaced as a failure.
    """

    error_code = "duplicate_notification"
    http_status = 200


# ============================================================================
# STATE ERRORS
# ============================================================================


class InvalidState(SettlementError):
    """
    Illegal state transition.

    Business impact: indicates a race or a bug; alert on it.
    """

    error_code = "invalid_state"
    http_status = 409

    def __init__(self, message: str, current_status: Optional[str] = None, **details: Any):
        super().__init__(message, current_status=current_status, **details)
        self.current_status = current_status


class TransactionNotFound(SettlementError):
    error_code = "transaction_not_found"
    http_status = 404


class PayoutNotFound(SettlementError):
    error_code = "payout_not_found"
    http_status = 404


class SellerNotFound(SettlementError):
    error_code = "seller_not_found"
    http_status = 404


class LockTimeout(SettlementError):
    """Per-seller critical section could not be entered in time."""

    error_code = "lock_timeout"
    http_status = 503


# ============================================================================
# EXTERNAL COLLABORATOR ERRORS
# ============================================================================


class GatewayErrorType(Enum):
    """Classification of processor errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class PaymentGatewayError(SettlementError):
    """Payment processor call failed or timed out."""

    error_code = "payment_gateway_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType = GatewayErrorType.TRANSIENT,
        original_error: Optional[Exception] = None,
        **details: Any,
    ):
        super().__init__(message, error_type=error_type.value, **details)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def is_retryable(self) -> bool:
        return self.error_type != GatewayErrorType.PERMANENT


class DisbursementError(PaymentGatewayError):
    """Disbursement instruction was rejected or timed out."""

    error_code = "disbursement_error"
