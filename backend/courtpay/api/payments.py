"""
Payments API Endpoints

Starts payments for the booking flow: creates the pending transaction and
returns where the user must be sent (VNPay redirect URL or PayOS payment
link with QR code).
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from typing import Dict, Any, Optional
import logging

from ..models.transactions import GatewayId, PaymentMethod
from .deps import PaymentServices, client_ip, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


class CreatePaymentRequest(BaseModel):
    gateway: GatewayId
    amount: int = Field(gt=0, description="Amount in VND")
    user_ref: str = Field(min_length=1)
    description: str = Field(min_length=1, max_length=255)
    booking_ref: Optional[str] = None
    method: Optional[PaymentMethod] = None
    return_url: Optional[str] = None


@router.post("/payments", status_code=201)
async def create_payment_endpoint(
    body: CreatePaymentRequest,
    request: Request,
    services: PaymentServices = Depends(get_services)
) -> Dict[str, Any]:
    """
    Create a payment and its gateway redirect.

    Request Body:
        gateway: "vnpay" or "payos"
        amount: Positive integer VND
        user_ref: Paying user id
        description: Order description shown by the gateway
        booking_ref: Optional booking id
        method: Optional payment method (defaults to the gateway)
        return_url: Optional override of the configured return URL

    Returns:
        {
            "transaction": Transaction,
            "redirect": PaymentRedirect,
            "expires_in_seconds": int
        }

    Example:
        POST /api/payments {"gateway": "vnpay", "amount": 200000, ...}
    """
    logger.info(f"Creating {body.gateway} payment for user {body.user_ref}: {body.amount} VND")

    txn, redirect = await services.payments.create_payment(
        gateway=body.gateway,
        amount=body.amount,
        user_ref=body.user_ref,
        description=body.description,
        booking_ref=body.booking_ref,
        method=body.method,
        return_url=body.return_url,
        client_ip=client_ip(request),
    )

    # VNPay learns of an order only when the user opens the redirect URL
    if services.sandbox is not None and body.gateway == "vnpay":
        services.sandbox.register("vnpay", txn.order_ref, txn.amount)

    return {
        "transaction": txn.model_dump(mode="json"),
        "redirect": redirect.model_dump(mode="json"),
        "expires_in_seconds": await services.store.remaining_seconds(txn.id),
    }
