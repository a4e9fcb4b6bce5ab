"""
PayOS Gateway Client

Payment-link creation over the merchant API, webhook/return verification,
and status queries. Amounts on the wire are plain VND. PayOS exposes no
refund API.
"""
import logging
import secrets
from typing import Any, Dict, List, Mapping, Optional

from ..config import PayOSConfig
from ..exceptions import GatewayRejectedError, InvalidOrderRefError, RefundNotSupportedError, SignatureInvalidError
from ..models.gateways import GatewayQueryResult, GatewayRefundResult, PaymentRedirect
from ..models.transactions import CallbackOutcome, CallbackResult
from .gateway_client import MAX_SAFE_INTEGER, GatewayClient, format_gateway_date, to_gateway_time
from .signature_service import payos_codec

logger = logging.getLogger(__name__)

SUCCESS_CODE = "00"

# PayOS rejects longer descriptions for non-linked bank accounts
MAX_DESCRIPTION_LENGTH = 25

STATUS_OUTCOMES: Dict[str, Optional[CallbackOutcome]] = {
    "PAID": CallbackOutcome.SUCCEEDED,
    "CANCELLED": CallbackOutcome.FAILED,
    "EXPIRED": CallbackOutcome.FAILED,
    "PROCESSING": CallbackOutcome.PROCESSING,
    "PENDING": None,
}

RESPONSE_DESCRIPTIONS = {
    "00": "Success",
    "01": "Transaction failed",
    "02": "Transaction already processed",
    "03": "Transaction cancelled",
    "97": "Invalid signature",
    "98": "Amount mismatch",
    "99": "System error",
}


def parse_order_code(order_ref: Any) -> int:
    """
    PayOS order codes are positive integers a JavaScript client can hold.

    Raises:
        InvalidOrderRefError: If order_ref is not such an integer
    """
    try:
        order_code = int(str(order_ref))
    except ValueError:
        order_code = 0
    if order_code <= 0 or order_code > MAX_SAFE_INTEGER:
        raise InvalidOrderRefError(
            f"Invalid PayOS order code: {order_ref!r}",
            details={"gateway": "payos", "order_ref": str(order_ref)}
        )
    return order_code


class PayOSClient(GatewayClient):
    """PayOS (payment-link API, nested webhook, HMAC-SHA256)."""

    gateway_id = "payos"
    amount_multiplier = 1
    supports_refunds = False
    supports_link_cancellation = True
    codec = payos_codec
    response_descriptions = RESPONSE_DESCRIPTIONS

    def __init__(self, config: PayOSConfig, **kwargs):
        super().__init__(**kwargs)
        self.config = config

    def _headers(self) -> Dict[str, str]:
        return {
            "x-client-id": self.config.client_id,
            "x-api-key": self.config.api_key,
            "Content-Type": "application/json",
        }

    def generate_order_ref(self) -> str:
        """YYMMDDHHMMSS (GMT+7) followed by three random digits."""
        stamp = format_gateway_date(self._clock.now())[2:]
        return f"{stamp}{secrets.randbelow(1000):03d}"

    def _verify_response_data(self, body: Dict[str, Any], order_ref: str) -> None:
        """Payment-link responses sign their data object like a webhook does."""
        data = body.get("data")
        signature = body.get("signature")
        if not isinstance(data, dict) or not signature:
            return
        if not self.codec.verify({"data": data}, signature, self.config.checksum_key):
            logger.warning(f"[payos] Invalid API response signature for order {order_ref}")
            raise SignatureInvalidError(
                "PayOS API response signature mismatch",
                details={"gateway": "payos", "order_ref": order_ref}
            )

    async def create_payment_request(
        self,
        order_ref: str,
        amount: int,
        description: str,
        return_url: Optional[str] = None,
        client_ip: str = "127.0.0.1",
        cancel_url: Optional[str] = None,
        items: Optional[List[Dict[str, Any]]] = None,
        expires_in_minutes: Optional[int] = None
    ) -> PaymentRedirect:
        """
        Create a payment link.

        The request signature covers amount, cancelUrl, description,
        orderCode and returnUrl only.

        Raises:
            InvalidAmountError: Amount not a positive integer
            InvalidOrderRefError: order_ref not a valid order code
            GatewayRejectedError: PayOS answered with a code other than 00
            GatewayUnavailableError: Network failure, timeout or 5xx
        """
        order_code = parse_order_code(order_ref)
        now = self._clock.now()
        signed = {
            "orderCode": order_code,
            "amount": self.to_gateway_amount(amount),
            "description": description[:MAX_DESCRIPTION_LENGTH],
            "returnUrl": return_url or self.config.return_url,
            "cancelUrl": cancel_url or self.config.cancel_url,
        }
        payload = dict(signed)
        payload["items"] = items or [{"name": description[:MAX_DESCRIPTION_LENGTH], "quantity": 1, "price": amount}]
        if expires_in_minutes:
            payload["expiredAt"] = int(to_gateway_time(now).timestamp()) + expires_in_minutes * 60
        payload["signature"] = self.codec.sign(self.codec.canonicalize(signed), self.config.checksum_key)

        body = await self._send(
            "POST",
            f"{self.config.api_url}/payment-requests",
            json=payload,
            headers=self._headers(),
        )

        code = str(body.get("code", ""))
        if code != SUCCESS_CODE or not isinstance(body.get("data"), dict):
            raise GatewayRejectedError(
                f"PayOS error: {body.get('desc') or 'payment link not created'}",
                details={"gateway": "payos", "order_ref": order_ref, "response_code": code}
            )
        self._verify_response_data(body, order_ref)

        data = body["data"]
        logger.info(f"[payos] Payment link {data.get('paymentLinkId')} created for order {order_ref}")

        return PaymentRedirect(
            gateway="payos",
            order_ref=order_ref,
            amount=amount,
            redirect_url=data.get("checkoutUrl", ""),
            create_date=format_gateway_date(now),
            payment_link_id=data.get("paymentLinkId"),
            qr_code=data.get("qrCode") or None,
            status=data.get("status") or "PENDING",
        )

    def verify_callback(self, raw_params: Mapping[str, Any]) -> CallbackResult:
        """
        Verify a webhook body ({code, desc, success, data, signature}) or a
        flat return-URL query string.
        """
        raw = dict(raw_params)
        valid = self.codec.verify(raw, self.codec.extract_signature(raw), self.config.checksum_key)

        nested = isinstance(raw.get("data"), Mapping)
        data = raw["data"] if nested else raw

        order_ref = str(data.get("orderCode", "") or "")
        response_code = str(data.get("code", raw.get("code", "")) or "")

        if nested:
            outcome = CallbackOutcome.SUCCEEDED if response_code == SUCCESS_CODE else CallbackOutcome.FAILED
        else:
            status = str(data.get("status", "") or "").upper()
            cancelled = str(data.get("cancel", "")).lower() == "true"
            if cancelled:
                outcome = CallbackOutcome.FAILED
            elif status in STATUS_OUTCOMES:
                outcome = STATUS_OUTCOMES[status]
            else:
                outcome = CallbackOutcome.SUCCEEDED if response_code == SUCCESS_CODE else CallbackOutcome.FAILED

        if not valid:
            logger.warning(f"[payos] Invalid callback signature for order {order_ref or '<missing>'}")

        external_no = data.get("reference") or data.get("paymentLinkId") or data.get("id")
        return CallbackResult(
            gateway="payos",
            valid=valid,
            order_ref=order_ref,
            amount=self.from_gateway_amount(data.get("amount")),
            response_code=response_code,
            success=outcome == CallbackOutcome.SUCCEEDED,
            outcome=outcome,
            external_transaction_no=str(external_no) if external_no else None,
            bank_ref=str(data.get("reference")) if data.get("reference") else None,
            raw=raw,
        )

    async def query_transaction(
        self,
        order_ref: str,
        original_txn_date: Optional[str] = None,
        client_ip: str = "127.0.0.1"
    ) -> GatewayQueryResult:
        """
        GET /payment-requests/{orderCode}.

        original_txn_date is unused; PayOS resolves the order by code alone.
        """
        order_code = parse_order_code(order_ref)
        url = f"{self.config.api_url}/payment-requests/{order_code}"

        async def attempt() -> Dict[str, Any]:
            return await self._send("GET", url, headers=self._headers())

        logger.info(f"[payos] query order={order_ref}")
        body = await self._with_query_retry(attempt)

        code = str(body.get("code", ""))
        data = body.get("data")
        if code != SUCCESS_CODE or not isinstance(data, dict):
            raise GatewayRejectedError(
                f"PayOS error: {body.get('desc') or 'transaction not found'}",
                details={"gateway": "payos", "order_ref": order_ref, "response_code": code}
            )
        self._verify_response_data(body, order_ref)

        gateway_status = str(data.get("status", "")).upper()
        if gateway_status in STATUS_OUTCOMES:
            outcome = STATUS_OUTCOMES[gateway_status]
        else:
            logger.warning(f"[payos] Unmapped status {gateway_status} for order {order_ref}")
            outcome = None

        transactions = data.get("transactions") or []
        reference = transactions[0].get("reference") if transactions else None

        return GatewayQueryResult(
            gateway="payos",
            order_ref=order_ref,
            response_code=code,
            gateway_status=gateway_status,
            outcome=outcome,
            amount=self.from_gateway_amount(data.get("amount")),
            external_transaction_no=reference or data.get("id"),
            bank_ref=reference,
            message=str(body.get("desc", "")),
            raw=body,
        )

    async def cancel_payment_link(self, order_ref: str, reason: Optional[str] = None) -> bool:
        """
        POST /payment-requests/{orderCode}/cancel. Never retried.

        Raises:
            InvalidOrderRefError: order_ref not a valid order code
            GatewayRejectedError: PayOS answered with a code other than 00,
                e.g. the order is already paid or cancelled
            GatewayUnavailableError: Network failure, timeout or 5xx
        """
        order_code = parse_order_code(order_ref)
        payload = {"cancellationReason": reason} if reason else {}

        logger.info(f"[payos] cancel link order={order_ref}")
        body = await self._send(
            "POST",
            f"{self.config.api_url}/payment-requests/{order_code}/cancel",
            json=payload,
            headers=self._headers(),
        )

        code = str(body.get("code", ""))
        if code != SUCCESS_CODE:
            raise GatewayRejectedError(
                f"PayOS error: {body.get('desc') or 'payment link not cancelled'}",
                details={"gateway": "payos", "order_ref": order_ref, "response_code": code}
            )
        self._verify_response_data(body, order_ref)

        logger.info(f"[payos] Payment link for order {order_ref} cancelled")
        return True

    async def process_refund(
        self,
        order_ref: str,
        original_txn_date: Optional[str],
        amount: int,
        kind: str,
        operator: str,
        client_ip: str = "127.0.0.1"
    ) -> GatewayRefundResult:
        raise RefundNotSupportedError(
            "PayOS does not support refunds through the API",
            details={"gateway": "payos", "order_ref": order_ref}
        )
