"""
VNPay Gateway Client

Payment URL creation, return/IPN verification, and the merchant web API
(querydr, refund). Amounts on the wire are VND x 100.

The merchant API does not use the key=value canonical form: requests and
responses are signed over a pipe-joined list of fields in a fixed order.
"""
import logging
import secrets
import uuid
from typing import Any, Dict, Mapping, Optional

from ..config import VNPayConfig
from ..exceptions import GatewayRejectedError, SignatureInvalidError
from ..models.gateways import GatewayQueryResult, GatewayRefundResult, PaymentRedirect
from ..models.transactions import CallbackOutcome, CallbackResult
from .gateway_client import GatewayClient, format_gateway_date
from .signature_service import vnpay_codec

logger = logging.getLogger(__name__)

API_VERSION = "2.1.0"

SUCCESS_CODE = "00"

REFUND_FULL = "02"
REFUND_PARTIAL = "03"

# Order of fields in the querydr response signature
QUERY_RESPONSE_FIELDS = (
    "vnp_ResponseId",
    "vnp_Command",
    "vnp_ResponseCode",
    "vnp_Message",
    "vnp_TmnCode",
    "vnp_TxnRef",
    "vnp_Amount",
    "vnp_BankCode",
    "vnp_PayDate",
    "vnp_TransactionNo",
    "vnp_TransactionType",
    "vnp_TransactionStatus",
    "vnp_OrderInfo",
    "vnp_PromotionCode",
    "vnp_PromotionAmount",
)

# Order of fields in the refund response signature
REFUND_RESPONSE_FIELDS = (
    "vnp_ResponseId",
    "vnp_Command",
    "vnp_ResponseCode",
    "vnp_Message",
    "vnp_TmnCode",
    "vnp_TxnRef",
    "vnp_Amount",
    "vnp_BankCode",
    "vnp_PayDate",
    "vnp_TransactionNo",
    "vnp_TransactionType",
    "vnp_TransactionStatus",
    "vnp_OrderInfo",
)

# vnp_TransactionStatus reported by querydr
TRANSACTION_STATUS_OUTCOMES: Dict[str, Optional[CallbackOutcome]] = {
    "00": CallbackOutcome.SUCCEEDED,
    "01": None,  # Not completed yet
    "02": CallbackOutcome.FAILED,
}

RESPONSE_DESCRIPTIONS = {
    "00": "Transaction successful",
    "01": "Transaction not found",
    "02": "Transaction already confirmed",
    "04": "Invalid amount",
    "05": "Transaction failed",
    "06": "Error while processing",
    "07": "Transaction blocked (suspected fraud)",
    "09": "Card/account not registered for internet banking",
    "10": "Card/account authentication failed more than 3 times",
    "11": "Payment window expired",
    "12": "Card/account is locked",
    "13": "Wrong OTP",
    "24": "Customer cancelled the transaction",
    "51": "Insufficient balance",
    "65": "Daily transaction limit exceeded",
    "75": "Bank under maintenance",
    "79": "Wrong payment password too many times",
    "91": "Transaction not found (merchant API)",
    "94": "Duplicate request",
    "97": "Invalid signature",
    "99": "Other error",
}


class VNPayClient(GatewayClient):
    """VNPay (flat signed query string, HMAC-SHA512)."""

    gateway_id = "vnpay"
    amount_multiplier = 100
    codec = vnpay_codec
    response_descriptions = RESPONSE_DESCRIPTIONS

    def __init__(self, config: VNPayConfig, **kwargs):
        super().__init__(**kwargs)
        self.config = config

    def generate_order_ref(self) -> str:
        """Timestamp (GMT+7) plus a random suffix, alphanumeric."""
        stamp = format_gateway_date(self._clock.now())[2:]
        return f"{stamp}{secrets.token_hex(3).upper()}"

    async def create_payment_request(
        self,
        order_ref: str,
        amount: int,
        description: str,
        return_url: Optional[str] = None,
        client_ip: str = "127.0.0.1",
        locale: str = "vn",
        bank_code: Optional[str] = None
    ) -> PaymentRedirect:
        """
        Build the signed redirect URL.

        Purely local: no call to VNPay is made until the user follows the URL.
        """
        create_date = format_gateway_date(self._clock.now())
        params = {
            "vnp_Version": API_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.config.tmn_code,
            "vnp_Locale": locale or "vn",
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": order_ref,
            "vnp_OrderInfo": description,
            "vnp_OrderType": "other",
            "vnp_Amount": self.to_gateway_amount(amount),
            "vnp_ReturnUrl": return_url or self.config.return_url,
            "vnp_IpAddr": client_ip,
            "vnp_CreateDate": create_date,
        }
        if bank_code:
            params["vnp_BankCode"] = bank_code

        query = self.codec.canonicalize(params)
        signature = self.codec.sign(query, self.config.hash_secret)
        redirect_url = f"{self.config.payment_url}?{query}&vnp_SecureHash={signature}"

        logger.info(f"[vnpay] Payment URL created for order {order_ref}, amount {amount} VND")

        return PaymentRedirect(
            gateway="vnpay",
            order_ref=order_ref,
            amount=amount,
            redirect_url=redirect_url,
            create_date=create_date,
        )

    def verify_callback(self, raw_params: Mapping[str, Any]) -> CallbackResult:
        """
        Verify a return-URL or IPN query string.

        Success requires vnp_ResponseCode 00 and, when present,
        vnp_TransactionStatus 00.
        """
        raw = {key: str(value) for key, value in raw_params.items()}
        valid = self.codec.verify(raw, self.codec.extract_signature(raw), self.config.hash_secret)

        order_ref = raw.get("vnp_TxnRef", "")
        response_code = raw.get("vnp_ResponseCode", "")
        transaction_status = raw.get("vnp_TransactionStatus")
        success = response_code == SUCCESS_CODE and transaction_status in (None, "", SUCCESS_CODE)

        if not valid:
            logger.warning(f"[vnpay] Invalid callback signature for order {order_ref or '<missing>'}")

        return CallbackResult(
            gateway="vnpay",
            valid=valid,
            order_ref=order_ref,
            amount=self.from_gateway_amount(raw.get("vnp_Amount")),
            response_code=response_code,
            success=success,
            outcome=CallbackOutcome.SUCCEEDED if success else CallbackOutcome.FAILED,
            external_transaction_no=raw.get("vnp_TransactionNo") or None,
            bank_ref=raw.get("vnp_BankTranNo") or None,
            raw=raw,
        )

    def _verify_response(self, body: Dict[str, Any], fields, order_ref: str) -> None:
        provided = body.get("vnp_SecureHash")
        values = [body.get(field, "") for field in fields]
        if not self.codec.verify_positional(values, provided, self.config.hash_secret):
            logger.warning(f"[vnpay] Invalid API response signature for order {order_ref}")
            raise SignatureInvalidError(
                "VNPay API response signature mismatch",
                details={"gateway": "vnpay", "order_ref": order_ref, "command": body.get("vnp_Command")}
            )

    async def query_transaction(
        self,
        order_ref: str,
        original_txn_date: Optional[str] = None,
        client_ip: str = "127.0.0.1"
    ) -> GatewayQueryResult:
        """
        querydr: status of a past payment.

        Args:
            order_ref: vnp_TxnRef of the payment
            original_txn_date: vnp_CreateDate sent with the payment (yyyyMMddHHmmss)
            client_ip: Caller IP forwarded to VNPay

        Raises:
            GatewayUnavailableError: After bounded retries
            GatewayRejectedError: Response code other than 00
            SignatureInvalidError: Response signature mismatch
        """
        async def attempt() -> Dict[str, Any]:
            request_id = uuid.uuid4().hex
            create_date = format_gateway_date(self._clock.now())
            order_info = f"Query transaction {order_ref}"
            signature = self.codec.sign_positional(
                [
                    request_id,
                    API_VERSION,
                    "querydr",
                    self.config.tmn_code,
                    order_ref,
                    original_txn_date or "",
                    create_date,
                    client_ip,
                    order_info,
                ],
                self.config.hash_secret,
            )
            payload = {
                "vnp_RequestId": request_id,
                "vnp_Version": API_VERSION,
                "vnp_Command": "querydr",
                "vnp_TmnCode": self.config.tmn_code,
                "vnp_TxnRef": order_ref,
                "vnp_OrderInfo": order_info,
                "vnp_TransactionDate": original_txn_date or "",
                "vnp_CreateDate": create_date,
                "vnp_IpAddr": client_ip,
                "vnp_SecureHash": signature,
            }
            return await self._send("POST", self.config.api_url, json=payload)

        logger.info(f"[vnpay] querydr order={order_ref} date={original_txn_date}")
        body = await self._with_query_retry(attempt)
        self._verify_response(body, QUERY_RESPONSE_FIELDS, order_ref)

        response_code = str(body.get("vnp_ResponseCode", ""))
        if response_code != SUCCESS_CODE:
            raise GatewayRejectedError(
                f"VNPay querydr failed: {self.describe_response_code(response_code)}",
                details={"gateway": "vnpay", "order_ref": order_ref, "response_code": response_code}
            )

        gateway_status = str(body.get("vnp_TransactionStatus", ""))
        if gateway_status in TRANSACTION_STATUS_OUTCOMES:
            outcome = TRANSACTION_STATUS_OUTCOMES[gateway_status]
        else:
            logger.warning(f"[vnpay] Unmapped transaction status {gateway_status} for order {order_ref}")
            outcome = None

        return GatewayQueryResult(
            gateway="vnpay",
            order_ref=order_ref,
            response_code=response_code,
            gateway_status=gateway_status,
            outcome=outcome,
            amount=self.from_gateway_amount(body.get("vnp_Amount")),
            external_transaction_no=str(body.get("vnp_TransactionNo") or "") or None,
            bank_ref=str(body.get("vnp_BankCode") or "") or None,
            message=str(body.get("vnp_Message", "")),
            raw=body,
        )

    async def process_refund(
        self,
        order_ref: str,
        original_txn_date: Optional[str],
        amount: int,
        kind: str,
        operator: str,
        client_ip: str = "127.0.0.1"
    ) -> GatewayRefundResult:
        """
        refund: full (02) or partial (03).

        Sent exactly once. A timeout surfaces as GatewayUnavailableError and
        the caller must query before trying again.
        """
        transaction_type = REFUND_FULL if kind == "full" else REFUND_PARTIAL
        gateway_amount = self.to_gateway_amount(amount)
        request_id = uuid.uuid4().hex
        create_date = format_gateway_date(self._clock.now())
        order_info = f"Refund transaction {order_ref}"
        transaction_no = "0"  # Unknown to the merchant; VNPay resolves it from TxnRef

        signature = self.codec.sign_positional(
            [
                request_id,
                API_VERSION,
                "refund",
                self.config.tmn_code,
                transaction_type,
                order_ref,
                gateway_amount,
                transaction_no,
                original_txn_date or "",
                operator,
                create_date,
                client_ip,
                order_info,
            ],
            self.config.hash_secret,
        )
        payload = {
            "vnp_RequestId": request_id,
            "vnp_Version": API_VERSION,
            "vnp_Command": "refund",
            "vnp_TmnCode": self.config.tmn_code,
            "vnp_TransactionType": transaction_type,
            "vnp_TxnRef": order_ref,
            "vnp_Amount": str(gateway_amount),
            "vnp_TransactionNo": transaction_no,
            "vnp_CreateBy": operator,
            "vnp_OrderInfo": order_info,
            "vnp_TransactionDate": original_txn_date or "",
            "vnp_CreateDate": create_date,
            "vnp_IpAddr": client_ip,
            "vnp_SecureHash": signature,
        }

        logger.info(f"[vnpay] refund order={order_ref} kind={kind} amount={amount} by={operator}")
        body = await self._send("POST", self.config.api_url, json=payload)
        self._verify_response(body, REFUND_RESPONSE_FIELDS, order_ref)

        response_code = str(body.get("vnp_ResponseCode", ""))
        return GatewayRefundResult(
            gateway="vnpay",
            order_ref=order_ref,
            kind="full" if kind == "full" else "partial",
            amount=amount,
            response_code=response_code,
            success=response_code == SUCCESS_CODE,
            external_transaction_no=str(body.get("vnp_TransactionNo") or "") or None,
            message=str(body.get("vnp_Message") or self.describe_response_code(response_code)),
            processed_at=self._clock.now(),
            raw=body,
        )
