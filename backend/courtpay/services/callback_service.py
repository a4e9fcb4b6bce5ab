"""
Callback Service

The single inbound path for gateway notifications:
verify signature -> apply outcome -> acknowledgement code.

Acknowledgement codes follow VNPay's IPN contract and are reused for the
PayOS webhook reply:
- 00 confirmed
- 01 order not found
- 02 order already confirmed
- 04 invalid amount
- 97 invalid signature
- 99 other error
"""
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel

from ..exceptions import (
    AmountMismatchError,
    PaymentError,
    SignatureInvalidError,
    UnknownOrderRefError,
)
from ..models.transactions import Provenance, Transaction
from .gateway_client import GatewayClient
from .transaction_service import TransactionStore

logger = logging.getLogger(__name__)

ACK_OK = "00"
ACK_NOT_FOUND = "01"
ACK_ALREADY_CONFIRMED = "02"
ACK_INVALID_AMOUNT = "04"
ACK_INVALID_SIGNATURE = "97"
ACK_OTHER = "99"

ACK_MESSAGES = {
    ACK_OK: "Confirm Success",
    ACK_NOT_FOUND: "Order not found",
    ACK_ALREADY_CONFIRMED: "Order already confirmed",
    ACK_INVALID_AMOUNT: "Invalid amount",
    ACK_INVALID_SIGNATURE: "Invalid signature",
    ACK_OTHER: "Unknown error",
}


class CallbackAck(BaseModel):
    code: str
    message: str
    transaction: Optional[Transaction] = None


class CallbackService:
    """Verifies and applies gateway callbacks."""

    def __init__(self, store: TransactionStore, clients: Dict[str, GatewayClient]):
        self._store = store
        self._clients = clients

    async def process(
        self,
        gateway_id: str,
        raw_params: Mapping[str, Any],
        provenance: Provenance
    ) -> Tuple[Transaction, bool]:
        """
        Verify and apply one callback.

        Returns:
            (transaction after the call, whether it was already final before)

        Raises:
            SignatureInvalidError: Signature missing or wrong; nothing is written
            UnknownOrderRefError: Order does not exist locally
            AmountMismatchError: Amount differs from the stored amount
        """
        client = self._clients[gateway_id]
        result = client.verify_callback(raw_params)
        if not result.valid:
            logger.warning(
                f"Rejected {gateway_id} {provenance} callback: invalid signature "
                f"(order_ref={result.order_ref or '<missing>'})"
            )
            raise SignatureInvalidError(
                f"Invalid {gateway_id} callback signature",
                details={"gateway": gateway_id, "order_ref": result.order_ref}
            )

        before = await self._store.get_by_order_ref(result.order_ref) if result.order_ref else None
        if before is None or before.gateway != gateway_id:
            logger.warning(f"{gateway_id} {provenance} callback for unknown order {result.order_ref!r}, ignored")
            raise UnknownOrderRefError(
                f"Unknown order reference: {result.order_ref}",
                details={"gateway": gateway_id, "order_ref": result.order_ref}
            )

        txn = await self._store.apply_callback_result(result.order_ref, result, provenance)
        return txn, before.is_terminal

    async def acknowledge(
        self,
        gateway_id: str,
        raw_params: Mapping[str, Any],
        provenance: Provenance
    ) -> CallbackAck:
        """Process a server-to-server notification and map the outcome to an ack code."""
        try:
            txn, already_final = await self.process(gateway_id, raw_params, provenance)
        except SignatureInvalidError:
            return self._ack(ACK_INVALID_SIGNATURE)
        except UnknownOrderRefError:
            return self._ack(ACK_NOT_FOUND)
        except AmountMismatchError:
            return self._ack(ACK_INVALID_AMOUNT)
        except PaymentError as e:
            logger.error(f"{gateway_id} {provenance} callback failed: {e.error_code} {e.message}")
            return self._ack(ACK_OTHER)

        if already_final:
            return self._ack(ACK_ALREADY_CONFIRMED, txn)
        return self._ack(ACK_OK, txn)

    @staticmethod
    def _ack(code: str, txn: Optional[Transaction] = None) -> CallbackAck:
        return CallbackAck(code=code, message=ACK_MESSAGES[code], transaction=txn)
