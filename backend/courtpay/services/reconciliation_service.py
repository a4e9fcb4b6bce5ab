"""
Reconciliation Service

On-demand resync of a transaction with its gateway, and refund
orchestration. All writes go through TransactionStore, so reconciliation
races callbacks and the sweeper under the same compare-and-set rules.
"""
import logging
from typing import Dict, Optional

from ..exceptions import (
    GatewayRejectedError,
    GatewayUnavailableError,
    RefundNotSupportedError,
    SignatureInvalidError,
    UnknownOrderRefError,
)
from ..models.gateways import ReconciliationResult, RefundSummary
from ..models.transactions import Transaction
from .gateway_client import GatewayClient
from .transaction_service import TransactionStore

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Gateway query and refund round-trips for existing transactions."""

    def __init__(self, store: TransactionStore, clients: Dict[str, GatewayClient]):
        self._store = store
        self._clients = clients

    async def _load(self, order_ref: str) -> Transaction:
        txn = await self._store.get_by_order_ref(order_ref)
        if txn is None:
            raise UnknownOrderRefError(
                f"Unknown order reference: {order_ref}",
                details={"order_ref": order_ref}
            )
        return txn

    async def query(self, order_ref: str, client_ip: str = "127.0.0.1") -> ReconciliationResult:
        """
        Ask the gateway for the order's status and apply it locally.

        A gateway status that is still open leaves the record untouched.

        Raises:
            UnknownOrderRefError: No local transaction
            GatewayUnavailableError: Gateway unreachable after retries
            GatewayRejectedError: Gateway refused the query
            SignatureInvalidError: Gateway response failed verification
            AmountMismatchError: Gateway amount differs from the stored amount
        """
        txn = await self._load(order_ref)
        client = self._clients[txn.gateway]

        result = await client.query_transaction(
            order_ref,
            txn.metadata.get("gateway_create_date"),
            client_ip=client_ip,
        )

        if result.outcome is None:
            logger.info(
                f"Reconciliation for {order_ref}: gateway status {result.gateway_status or 'open'}, no change"
            )
            return ReconciliationResult(transaction=txn, query=result, applied=False)

        updated = await self._store.apply_callback_result(order_ref, result, "reconciliation")
        applied = updated.status != txn.status
        logger.info(
            f"Reconciliation for {order_ref}: gateway={result.gateway_status}, "
            f"local {txn.status.value} -> {updated.status.value}"
        )
        return ReconciliationResult(transaction=updated, query=result, applied=applied)

    async def refund(
        self,
        order_ref: str,
        amount: Optional[int],
        kind: str,
        operator: str,
        reason: Optional[str] = None,
        client_ip: str = "127.0.0.1"
    ) -> Transaction:
        """
        Refund all or part of a succeeded payment.

        Flow:
        1. Validate locally and write a pending refund record (blocks the balance)
        2. Call the gateway once
        3. Settle the record: refunded, failed, or left pending for re-query

        Returns:
            The settled refund record

        Raises:
            UnknownOrderRefError: No local transaction
            RefundNotSupportedError: Gateway has no refund API
            RefundNotAllowedError: Parent not refundable
            RefundExceedsBalanceError: amount larger than the remaining balance
            GatewayRejectedError: Gateway declined; refund record is failed
            GatewayUnavailableError: Outcome unknown; refund record stays pending
        """
        txn = await self._load(order_ref)
        client = self._clients[txn.gateway]
        if not client.supports_refunds:
            raise RefundNotSupportedError(
                f"{txn.gateway} does not support refunds through the API",
                details={"gateway": txn.gateway, "order_ref": order_ref}
            )

        record = await self._store.reserve_refund(txn.id, amount, kind, operator, reason)

        try:
            result = await client.process_refund(
                order_ref,
                txn.metadata.get("gateway_create_date"),
                record.amount,
                kind,
                operator,
                client_ip=client_ip,
            )
        except (GatewayUnavailableError, SignatureInvalidError) as e:
            await self._store.flag_requires_requery(record.id, e.message)
            raise
        except GatewayRejectedError as e:
            await self._store.complete_refund(record.id, False, message=e.message)
            raise

        settled = await self._store.complete_refund(
            record.id,
            result.success,
            external_transaction_no=result.external_transaction_no,
            response_code=result.response_code,
            message=result.message,
        )
        if not result.success:
            raise GatewayRejectedError(
                f"Refund declined by {txn.gateway}: {result.message}",
                details={
                    "gateway": txn.gateway,
                    "order_ref": order_ref,
                    "refund_id": record.id,
                    "response_code": result.response_code,
                }
            )

        logger.info(f"Refunded {record.amount} on {order_ref} ({kind}) as {settled.id}")
        return settled

    async def refund_summary(self, order_ref: str) -> RefundSummary:
        txn = await self._load(order_ref)
        refunds = await self._store.list_refunds(txn.id)
        refunded = await self._store.refunded_total(txn.id)
        return RefundSummary(
            transaction_id=txn.id,
            order_ref=order_ref,
            original_amount=txn.amount,
            refunded_amount=refunded,
            refund_count=len(refunds),
            remaining=txn.amount - refunded,
        )
