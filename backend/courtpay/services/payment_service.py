"""
Payment Service

Starts a payment: records a pending transaction, then asks the gateway for
the redirect URL or payment link the booking flow sends the user to.
"""
import logging
from typing import Dict, Optional, Tuple

from ..exceptions import DuplicateOrderRefError, PaymentError
from ..models.gateways import PaymentRedirect
from ..models.transactions import PaymentEvent, PaymentMethod, Transaction, TransactionType
from .gateway_client import GatewayClient
from .transaction_service import TransactionStore

logger = logging.getLogger(__name__)

MAX_ORDER_REF_ATTEMPTS = 5

# Local outcomes after which a still-open gateway link must not be paid
LINK_RELEASE_EVENTS = ("payment.cancelled", "payment.expired")


class PaymentService:
    def __init__(self, store: TransactionStore, clients: Dict[str, GatewayClient]):
        self._store = store
        self._clients = clients

    async def _create_with_fresh_ref(self, client: GatewayClient, **fields) -> Transaction:
        """
        Create the record under a newly generated order reference.

        Time-based references collide when several payments start within the
        same second; a collision draws a new reference.

        Raises:
            DuplicateOrderRefError: Every attempt collided
        """
        for attempt in range(1, MAX_ORDER_REF_ATTEMPTS + 1):
            order_ref = client.generate_order_ref()
            try:
                return await self._store.create(order_ref=order_ref, **fields)
            except DuplicateOrderRefError:
                if attempt == MAX_ORDER_REF_ATTEMPTS:
                    raise
                logger.info(f"Order reference {order_ref} already taken, drawing another")

    async def create_payment(
        self,
        gateway: str,
        amount: int,
        user_ref: str,
        description: str,
        booking_ref: Optional[str] = None,
        method: Optional[PaymentMethod] = None,
        return_url: Optional[str] = None,
        client_ip: str = "127.0.0.1"
    ) -> Tuple[Transaction, PaymentRedirect]:
        """
        Create a pending payment and its gateway redirect.

        If the gateway refuses to create the payment the transaction is
        cancelled, so it never lingers until the sweeper times it out.

        Raises:
            InvalidAmountError: amount is not a positive integer
            DuplicateOrderRefError: No free order reference after several draws
            GatewayRejectedError / GatewayUnavailableError: link creation failed
        """
        client = self._clients[gateway]
        client.to_gateway_amount(amount)

        txn = await self._create_with_fresh_ref(
            client,
            amount=amount,
            method=method or PaymentMethod(gateway),
            user_ref=user_ref,
            gateway=gateway,
            type=TransactionType.PAYMENT,
            booking_ref=booking_ref,
            metadata={"description": description, "client_ip": client_ip},
        )

        try:
            redirect = await client.create_payment_request(
                txn.order_ref,
                amount,
                description,
                return_url=return_url,
                client_ip=client_ip,
            )
        except PaymentError as e:
            logger.error(f"Payment request for {txn.order_ref} failed: {e.error_code} {e.message}")
            await self._store.cancel(txn.id, f"gateway_error: {e.message}", operator="system")
            raise

        updates = {"gateway_create_date": redirect.create_date}
        if redirect.payment_link_id:
            updates["payment_link_id"] = redirect.payment_link_id
        txn = await self._store.update_metadata(txn.id, updates)

        logger.info(f"Payment {txn.id} started on {gateway} for {amount} VND (order_ref={txn.order_ref})")
        return txn, redirect

    async def release_payment_link(self, event: PaymentEvent) -> None:
        """
        Event subscriber: cancel the gateway link of a payment that was
        cancelled or timed out here, so the user can no longer pay it.

        Best-effort. A gateway refusal or outage is logged and the link is
        left open; a payment that still arrives is caught as a late
        confirmation.
        """
        if event.event_type not in LINK_RELEASE_EVENTS:
            return

        txn = await self._store.get(event.transaction_id)
        client = self._clients.get(txn.gateway)
        if client is None or not client.supports_link_cancellation:
            return
        if not txn.metadata.get("payment_link_id") or txn.metadata.get("payment_link_cancelled"):
            return

        try:
            await client.cancel_payment_link(txn.order_ref, reason=event.reason)
        except PaymentError as e:
            logger.warning(
                f"Could not cancel {txn.gateway} payment link for {txn.order_ref}: {e.error_code} {e.message}"
            )
            return

        await self._store.update_metadata(txn.id, {"payment_link_cancelled": True})
        logger.info(f"Payment link for {txn.order_ref} cancelled after {event.event_type}")
