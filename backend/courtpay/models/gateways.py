"""
Pydantic Gateway Models

Normalized request/response shapes shared by the VNPay and PayOS clients.
"""
from datetime import datetime
from typing import Optional, Dict, Any, Literal
from pydantic import BaseModel, Field

from .transactions import CallbackOutcome, GatewayId, Transaction


class PaymentRedirect(BaseModel):
    """
    Where the initiating flow sends the user.

    VNPay: redirect_url only. PayOS: payment-link object with QR code.
    """
    gateway: GatewayId
    order_ref: str
    amount: int = Field(gt=0)
    redirect_url: str
    create_date: str  # Gateway-formatted creation timestamp, needed later for query/refund
    payment_link_id: Optional[str] = None
    qr_code: Optional[str] = None
    status: str = "PENDING"


class GatewayQueryResult(BaseModel):
    """Gateway-reported status of an order."""
    gateway: GatewayId
    order_ref: str
    response_code: str
    gateway_status: str
    outcome: Optional[CallbackOutcome] = None  # None: gateway still considers it open
    amount: Optional[int] = None  # VND
    external_transaction_no: Optional[str] = None
    bank_ref: Optional[str] = None
    message: str = ""
    raw: Dict[str, Any] = Field(default_factory=dict)


class GatewayRefundResult(BaseModel):
    """Outcome of a refund call."""
    gateway: GatewayId
    order_ref: str
    kind: Literal["full", "partial"]
    amount: int
    response_code: str
    success: bool
    external_transaction_no: Optional[str] = None
    message: str = ""
    processed_at: datetime
    raw: Dict[str, Any] = Field(default_factory=dict)


class ReconciliationResult(BaseModel):
    """What a reconciliation query found and whether it changed the record."""
    transaction: Transaction
    query: GatewayQueryResult
    applied: bool


class RefundSummary(BaseModel):
    """Refund balance of a payment, computed from its linked refund records."""
    transaction_id: str
    order_ref: str
    original_amount: int
    refunded_amount: int  # Pending and completed refunds
    refund_count: int
    remaining: int
