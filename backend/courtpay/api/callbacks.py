"""
Gateway Callback Endpoints

Server-to-server notifications (VNPay IPN, PayOS webhook) always answer
2xx with an acknowledgement code so the gateway stops retrying only when it
should. User-facing return URLs answer with the transaction state, or an
error response when the signature or order is bad.
"""
from fastapi import APIRouter, Depends, Request
from typing import Dict, Any
import logging

from ..exceptions import PaymentError
from ..services.callback_service import ACK_OK, CallbackService
from .deps import get_callback_service

logger = logging.getLogger(__name__)

router = APIRouter()


def _status_payload(txn, already_final: bool) -> Dict[str, Any]:
    return {
        "transaction_id": txn.id,
        "order_ref": txn.order_ref,
        "status": txn.status.value,
        "amount": txn.amount,
        "already_final": already_final,
    }


@router.api_route("/vnpay/ipn", methods=["GET", "POST"])
async def vnpay_ipn_endpoint(
    request: Request,
    callbacks: CallbackService = Depends(get_callback_service)
) -> Dict[str, str]:
    """
    VNPay Instant Payment Notification.

    Returns:
        {"RspCode": str, "Message": str} as VNPay expects
    """
    params = dict(request.query_params)
    ack = await callbacks.acknowledge("vnpay", params, "webhook")
    logger.info(f"VNPay IPN for {params.get('vnp_TxnRef', '<missing>')}: RspCode={ack.code}")
    return {"RspCode": ack.code, "Message": ack.message}


@router.get("/vnpay/return")
async def vnpay_return_endpoint(
    request: Request,
    callbacks: CallbackService = Depends(get_callback_service)
) -> Dict[str, Any]:
    """
    VNPay return URL (user's browser lands here after paying).

    Raises:
        SignatureInvalidError (400), UnknownOrderRefError (404),
        AmountMismatchError (400)
    """
    txn, already_final = await callbacks.process("vnpay", dict(request.query_params), "return")
    return _status_payload(txn, already_final)


@router.post("/payos/webhook")
async def payos_webhook_endpoint(
    request: Request,
    callbacks: CallbackService = Depends(get_callback_service)
) -> Dict[str, Any]:
    """
    PayOS webhook ({code, desc, success, data, signature}).

    Returns:
        {"code": str, "desc": str, "success": bool}
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    ack = await callbacks.acknowledge("payos", payload, "webhook")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    logger.info(f"PayOS webhook for {data.get('orderCode', '<missing>')}: code={ack.code}")
    return {"code": ack.code, "desc": ack.message, "success": ack.code == ACK_OK}


@router.get("/payos/return")
async def payos_return_endpoint(
    request: Request,
    callbacks: CallbackService = Depends(get_callback_service)
) -> Dict[str, Any]:
    """PayOS return URL (flat signed query string)."""
    try:
        txn, already_final = await callbacks.process("payos", dict(request.query_params), "return")
    except PaymentError as e:
        logger.info(f"PayOS return rejected: {e.error_code}")
        raise
    return _status_payload(txn, already_final)
