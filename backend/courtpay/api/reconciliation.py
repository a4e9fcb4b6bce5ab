"""
Reconciliation API Endpoints

Operator-triggered gateway queries and refunds, addressed by order reference.
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from typing import Dict, Any, Literal, Optional
import logging

from ..services.reconciliation_service import ReconciliationService
from .deps import client_ip, get_reconciliation_service

logger = logging.getLogger(__name__)

router = APIRouter()


class RefundRequest(BaseModel):
    kind: Literal["full", "partial"]
    operator: str = Field(min_length=1)
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None


@router.post("/{order_ref}/query")
async def query_order_endpoint(
    order_ref: str,
    request: Request,
    reconciliation: ReconciliationService = Depends(get_reconciliation_service)
) -> Dict[str, Any]:
    """
    Query the gateway for an order and apply what it reports.

    Returns:
        {
            "transaction": Transaction,
            "gateway_status": str,
            "applied": bool
        }

    Example:
        POST /api/reconciliation/251019143005A1B2C3/query
    """
    result = await reconciliation.query(order_ref, client_ip=client_ip(request))

    return {
        "transaction": result.transaction.model_dump(mode="json"),
        "gateway_status": result.query.gateway_status,
        "response_code": result.query.response_code,
        "message": result.query.message,
        "applied": result.applied,
    }


@router.post("/{order_ref}/refund", status_code=201)
async def refund_order_endpoint(
    order_ref: str,
    body: RefundRequest,
    request: Request,
    reconciliation: ReconciliationService = Depends(get_reconciliation_service)
) -> Dict[str, Any]:
    """
    Refund all or part of a succeeded payment.

    Request Body:
        kind: "full" or "partial"
        operator: Who requested the refund
        amount: VND, required for partial refunds
        reason: Optional free text

    Raises:
        RefundExceedsBalanceError (409), RefundNotAllowedError (409),
        RefundNotSupportedError (400), GatewayRejectedError (502),
        GatewayUnavailableError (503)
    """
    logger.info(f"Refund requested on {order_ref} by {body.operator}: {body.kind} {body.amount}")

    refund = await reconciliation.refund(
        order_ref,
        body.amount,
        body.kind,
        body.operator,
        reason=body.reason,
        client_ip=client_ip(request),
    )
    return refund.model_dump(mode="json")


@router.get("/{order_ref}/refunds")
async def refund_summary_endpoint(
    order_ref: str,
    reconciliation: ReconciliationService = Depends(get_reconciliation_service)
) -> Dict[str, Any]:
    """Refund balance of a payment."""
    summary = await reconciliation.refund_summary(order_ref)
    return summary.model_dump(mode="json")
