"""
Pydantic Transaction Models

Represents the transaction record, its state machine vocabulary, and the
events the core emits to booking/notification collaborators.
"""
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Literal
from pydantic import BaseModel, Field


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    REFUND_FULL = "refund_full"
    REFUND_PARTIAL = "refund_partial"
    REVERSAL = "reversal"  # Chargeback
    ADJUSTMENT = "adjustment"  # Manual correction
    PAYOUT = "payout"  # Platform -> coach / field owner
    FEE = "fee"  # Platform fee


class PaymentMethod(str, Enum):
    CASH = "cash"
    EBANKING = "ebanking"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    MOMO = "momo"
    ZALOPAY = "zalopay"
    BANK_TRANSFER = "bank_transfer"
    QR_CODE = "qr_code"
    INTERNAL = "internal"
    PAYOS = "payos"
    VNPAY = "vnpay"
    WALLET = "wallet"


GatewayId = Literal["vnpay", "payos"]
Provenance = Literal["webhook", "return", "reconciliation"]

TERMINAL_STATUSES = frozenset({
    TransactionStatus.SUCCEEDED,
    TransactionStatus.FAILED,
    TransactionStatus.REFUNDED,
})

# Allowed transitions. refunded is only ever the state of a refund-type record.
TRANSITIONS: Dict[TransactionStatus, frozenset] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.PROCESSING,
        TransactionStatus.SUCCEEDED,
        TransactionStatus.FAILED,
        TransactionStatus.REFUNDED,
    }),
    TransactionStatus.PROCESSING: frozenset({
        TransactionStatus.SUCCEEDED,
        TransactionStatus.FAILED,
    }),
    TransactionStatus.SUCCEEDED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}


class Transaction(BaseModel):
    """
    Transaction record.

    Notes:
    - amount is VND and immutable after creation
    - refunds are separate records linked via related_transaction_id
    - expires_at is the effective payment deadline (extensions included)
    """
    id: str = Field(pattern="^txn_")
    order_ref: str
    gateway: GatewayId
    user_ref: str
    booking_ref: Optional[str] = None
    amount: int = Field(gt=0)
    method: PaymentMethod
    type: TransactionType
    status: TransactionStatus
    external_transaction_no: Optional[str] = None
    related_transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime
    pending_events: List[str] = Field(default_factory=list)
    version: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "txn_3f9a1c2b4d5e6f70",
                "order_ref": "251019143005123",
                "gateway": "payos",
                "user_ref": "user_001",
                "booking_ref": "booking_abc",
                "amount": 200000,
                "method": "payos",
                "type": "payment",
                "status": "pending",
                "external_transaction_no": None,
                "related_transaction_id": None,
                "metadata": {},
                "expires_at": "2025-10-19T07:45:05",
                "pending_events": [],
                "version": 0,
                "created_at": "2025-10-19T07:30:05",
                "updated_at": "2025-10-19T07:30:05"
            }
        }
    }

    @property
    def pending_event(self) -> Optional[str]:
        """Oldest event still owed to subscribers."""
        return self.pending_events[0] if self.pending_events else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class CallbackOutcome(str, Enum):
    """Local outcome a gateway report maps to."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PROCESSING = "processing"

    @property
    def status(self) -> TransactionStatus:
        return TransactionStatus(self.value)


class CallbackResult(BaseModel):
    """
    Normalized result of a verified (or rejected) gateway callback.

    One shape for both gateways; gateway tags the variant and raw keeps
    the untouched payload for audit.
    """
    gateway: GatewayId
    valid: bool
    order_ref: str = ""
    amount: Optional[int] = None  # VND, already scaled back from the gateway unit
    response_code: str = ""
    success: bool = False
    outcome: Optional[CallbackOutcome] = None
    external_transaction_no: Optional[str] = None
    bank_ref: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class PaymentEvent(BaseModel):
    """
    Event emitted to booking/notification collaborators.

    Consumers must be idempotent: delivery is at-least-once.
    """
    event_type: Literal[
        "payment.success",
        "payment.failed",
        "payment.expired",
        "payment.cancelled",
        "payment.extended",
    ]
    transaction_id: str
    booking_id: Optional[str] = None
    user_id: str
    amount: int
    method: PaymentMethod
    timestamp: datetime
    reason: Optional[str] = None
    extensions: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        """Wire format for subscribers and the event stream."""
        payload = {
            "transactionId": self.transaction_id,
            "bookingId": self.booking_id,
            "userId": self.user_id,
            "amount": self.amount,
            "method": self.method.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.extensions is not None:
            payload["extensions"] = self.extensions
        return payload
