"""
Payment Exception Hierarchy

Error codes for the gateway integration core.
All errors use the payment: prefix so API clients can match on them.
"""
from typing import Optional, Dict, Any


class PaymentError(Exception):
    """
    Base exception for all payment core errors.

    http_status is the status the API layer answers with when the error
    escapes a request handler.
    """

    http_status = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class ConfigurationError(PaymentError):
    """
    Gateway configuration incomplete.

    Fatal at startup: the process must not serve traffic without
    merchant codes, secrets and gateway URLs.
    """

    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:config:missing", message, details)


class SignatureInvalidError(PaymentError):
    """
    Signature verification failed.

    Examples:
    - Callback hash does not match the canonical parameter string
    - Gateway API response carries a forged or corrupted checksum

    Security rejection: never retryable, never mutates a transaction.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:signature:invalid", message, details)


class UnknownOrderRefError(PaymentError):
    """
    Callback references an order that does not exist locally.

    Logged and ignored; a transaction is never created implicitly.
    """

    http_status = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:order:unknown", message, details)


class StateConflictError(PaymentError):
    """
    Requested transition is not allowed from the current status.

    Example:
    - Admin cancels a transaction that already succeeded
    """

    http_status = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:state:conflict", message, details)


class GatewayUnavailableError(PaymentError):
    """
    Gateway unreachable, timed out, or answered with a 5xx.

    Retryable for queries. A refund must be re-queried before any retry
    because it may already have executed.
    """

    http_status = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:gateway:unavailable", message, details)


class GatewayRejectedError(PaymentError):
    """
    Gateway answered, but refused the request.

    Examples:
    - VNPay refund response code other than 00
    - PayOS payment-link creation returned code other than 00
    """

    http_status = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:gateway:rejected", message, details)


class RefundExceedsBalanceError(PaymentError):
    """
    Refund amount is larger than the remaining refundable balance.

    Rejected before any remote call is made.
    """

    http_status = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:refund:exceeds_balance", message, details)


class RefundNotAllowedError(PaymentError):
    """
    Transaction cannot be refunded.

    Examples:
    - Parent transaction is not a succeeded payment
    - Full refund requested for less than the original amount
    """

    http_status = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:refund:not_allowed", message, details)


class RefundNotSupportedError(PaymentError):
    """Gateway offers no refund API."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:refund:unsupported", message, details)


class AmountMismatchError(PaymentError):
    """
    Callback amount differs from the stored transaction amount.

    The callback is discarded; the transaction is left untouched.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:amount:mismatch", message, details)


class InvalidAmountError(PaymentError):
    """Amount is not a positive integer in the gateway unit."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:amount:invalid", message, details)


class InvalidOrderRefError(PaymentError):
    """
    Order reference is not in a format the gateway accepts.

    Example:
    - PayOS orderCode that is not a positive integer below 2^53
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:order:invalid", message, details)


class DuplicateOrderRefError(PaymentError):
    """A transaction with this order reference already exists."""

    http_status = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:order:duplicate", message, details)


class TransactionNotFoundError(PaymentError):
    """No transaction with the given id."""

    http_status = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:transaction:not_found", message, details)


class EventDeliveryError(PaymentError):
    """
    One or more event subscribers failed.

    The transition is already committed; the event stays marked pending
    and the sweeper publishes it again.
    """

    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:event:delivery", message, details)


class ExtensionLimitError(PaymentError):
    """Payment deadline has already been extended the maximum number of times."""

    http_status = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:extension:limit", message, details)
