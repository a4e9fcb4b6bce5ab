"""
Transactions API Endpoints

Read access to transaction records plus the admin operations on pending
payments (cancel, extend the payment deadline).
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from typing import Dict, Any, Optional
import logging

from ..exceptions import TransactionNotFoundError
from ..models.transactions import TransactionStatus
from ..services.transaction_service import TransactionStore
from .deps import get_store

logger = logging.getLogger(__name__)

router = APIRouter()


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1)
    operator: Optional[str] = None


class ExtendRequest(BaseModel):
    extra_minutes: Optional[int] = Field(default=None, gt=0)


@router.get("/booking/{booking_ref}")
async def get_payment_by_booking_endpoint(
    booking_ref: str,
    store: TransactionStore = Depends(get_store)
) -> Dict[str, Any]:
    """
    Latest payment started for a booking.

    Raises:
        TransactionNotFoundError (404): No payment for this booking
    """
    transaction = await store.get_by_booking_ref(booking_ref)
    if transaction is None:
        raise TransactionNotFoundError(
            f"No payment found for booking {booking_ref}",
            details={"booking_ref": booking_ref}
        )
    return transaction.model_dump(mode="json")


@router.get("/history/{user_ref}")
async def get_payment_history_endpoint(
    user_ref: str,
    status: Optional[TransactionStatus] = None,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    store: TransactionStore = Depends(get_store)
) -> Dict[str, Any]:
    """
    A user's payments, newest first.

    Query Parameters:
        status: Optional status filter (pending, succeeded, ...)
        limit: Page size, 1 to 100 (default 10)
        offset: Records to skip (default 0)

    Example:
        GET /api/transactions/history/user_001?status=succeeded&limit=5
    """
    payments, total = await store.list_payments(user_ref, status=status, limit=limit, offset=offset)
    return {
        "payments": [payment.model_dump(mode="json") for payment in payments],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/{transaction_id}")
async def get_transaction_endpoint(
    transaction_id: str,
    store: TransactionStore = Depends(get_store)
) -> Dict[str, Any]:
    """
    Get transaction details.

    Path Parameters:
        transaction_id: Transaction identifier

    Returns:
        Transaction record

    Example:
        GET /api/transactions/txn_3f9a1c2b4d5e6f70
    """
    logger.debug(f"Retrieving transaction: {transaction_id}")

    transaction = await store.get(transaction_id)
    return transaction.model_dump(mode="json")


@router.get("/{transaction_id}/remaining-time")
async def get_remaining_time_endpoint(
    transaction_id: str,
    store: TransactionStore = Depends(get_store)
) -> Dict[str, Any]:
    """
    Seconds left before a pending payment times out.

    Returns:
        {"transaction_id": str, "status": str, "remaining_seconds": int}
    """
    transaction = await store.get(transaction_id)
    return {
        "transaction_id": transaction_id,
        "status": transaction.status.value,
        "expires_at": transaction.expires_at.isoformat(),
        "remaining_seconds": await store.remaining_seconds(transaction_id),
    }


@router.get("/{transaction_id}/refunds")
async def list_refunds_endpoint(
    transaction_id: str,
    store: TransactionStore = Depends(get_store)
) -> Dict[str, Any]:
    """
    List refund records linked to a payment.

    Example:
        GET /api/transactions/txn_3f9a1c2b4d5e6f70/refunds
    """
    await store.get(transaction_id)
    refunds = await store.list_refunds(transaction_id)

    return {
        "transaction_id": transaction_id,
        "refunds": [refund.model_dump(mode="json") for refund in refunds],
        "total_count": len(refunds),
    }


@router.post("/{transaction_id}/cancel")
async def cancel_transaction_endpoint(
    transaction_id: str,
    body: CancelRequest,
    store: TransactionStore = Depends(get_store)
) -> Dict[str, Any]:
    """
    Cancel a pending payment.

    Raises:
        TransactionNotFoundError (404), StateConflictError (409)
    """
    logger.info(f"Cancel requested for {transaction_id} by {body.operator or 'system'}")

    await store.cancel(transaction_id, body.reason, operator=body.operator)
    transaction = await store.get(transaction_id)
    return transaction.model_dump(mode="json")


@router.post("/{transaction_id}/extend")
async def extend_transaction_endpoint(
    transaction_id: str,
    body: Optional[ExtendRequest] = None,
    store: TransactionStore = Depends(get_store)
) -> Dict[str, Any]:
    """
    Extend the payment deadline of a pending payment.

    Request Body:
        extra_minutes: Optional, defaults to the configured payment timeout

    Raises:
        ExtensionLimitError (409), StateConflictError (409)
    """
    extra_minutes = body.extra_minutes if body else None
    transaction = await store.extend(transaction_id, extra_minutes)

    return {
        "transaction": transaction.model_dump(mode="json"),
        "extensions": transaction.metadata.get("extension_count", 0),
        "remaining_seconds": await store.remaining_seconds(transaction_id),
    }
