"""
Mock Gateway Processor

In-process sandbox for VNPay and PayOS. Serves their merchant APIs through an
httpx.MockTransport and builds correctly signed return/IPN/webhook payloads,
so the whole payment flow runs without network access.

Mock Behavior:
- Orders start unpaid; pay()/fail() settle them as the real gateway would
- fail_next / timeout_next make the next calls answer 503 or time out
- refund_response_code controls what the VNPay refund command answers
"""
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from ..config import PayOSConfig, VNPayConfig
from ..services.gateway_client import format_gateway_date
from ..services.signature_service import payos_codec, vnpay_codec
from ..services.vnpay_client import QUERY_RESPONSE_FIELDS, REFUND_RESPONSE_FIELDS

VNPAY_STATUS_PENDING = "01"
VNPAY_STATUS_PAID = "00"
VNPAY_STATUS_FAILED = "02"


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class GatewaySandbox:
    """
    Fake VNPay + PayOS backends.

    orders: {order_ref: {"gateway", "amount" (VND), "status", "transaction_no"}}
    """

    def __init__(self, vnpay: VNPayConfig, payos: PayOSConfig):
        self.vnpay = vnpay
        self.payos = payos
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.fail_next = 0
        self.timeout_next = 0
        self.refund_response_code = "00"

    # ------------------------------------------------------------------
    # Order state
    # ------------------------------------------------------------------

    def register(self, gateway: str, order_ref: str, amount: int) -> None:
        status = VNPAY_STATUS_PENDING if gateway == "vnpay" else "PENDING"
        self.orders[order_ref] = {
            "gateway": gateway,
            "amount": amount,
            "status": status,
            "transaction_no": str(uuid.uuid4().int)[:8],
        }

    def pay(self, order_ref: str) -> None:
        order = self.orders[order_ref]
        order["status"] = VNPAY_STATUS_PAID if order["gateway"] == "vnpay" else "PAID"

    def fail(self, order_ref: str) -> None:
        order = self.orders[order_ref]
        order["status"] = VNPAY_STATUS_FAILED if order["gateway"] == "vnpay" else "CANCELLED"

    # ------------------------------------------------------------------
    # Signed inbound payloads
    # ------------------------------------------------------------------

    def vnpay_callback(
        self,
        order_ref: str,
        amount: int,
        response_code: str = "00",
        transaction_status: Optional[str] = None,
        transaction_no: Optional[str] = None
    ) -> Dict[str, str]:
        """Query parameters VNPay appends to the return URL and sends to the IPN URL."""
        params = {
            "vnp_Amount": str(amount * 100),
            "vnp_BankCode": "NCB",
            "vnp_BankTranNo": f"VNP{order_ref}",
            "vnp_CardType": "ATM",
            "vnp_OrderInfo": f"Thanh toan don hang {order_ref}",
            "vnp_PayDate": format_gateway_date(_now()),
            "vnp_ResponseCode": response_code,
            "vnp_TmnCode": self.vnpay.tmn_code,
            "vnp_TransactionNo": transaction_no or "14226112",
            "vnp_TransactionStatus": transaction_status or response_code,
            "vnp_TxnRef": order_ref,
        }
        params["vnp_SecureHash"] = vnpay_codec.sign_params(params, self.vnpay.hash_secret)
        return params

    def payos_webhook(
        self,
        order_ref: str,
        amount: int,
        code: str = "00",
        description: str = "Court booking"
    ) -> Dict[str, Any]:
        """Body PayOS POSTs to the webhook URL."""
        data = {
            "orderCode": int(order_ref),
            "amount": amount,
            "description": description,
            "accountNumber": "12345678",
            "reference": f"FT{order_ref}",
            "transactionDateTime": _now().strftime("%Y-%m-%d %H:%M:%S"),
            "currency": "VND",
            "paymentLinkId": uuid.uuid4().hex,
            "code": code,
            "desc": "success" if code == "00" else "failed",
            "counterAccountBankId": "",
            "counterAccountBankName": "",
            "counterAccountName": None,
            "counterAccountNumber": None,
            "virtualAccountName": "",
            "virtualAccountNumber": "",
        }
        return {
            "code": code,
            "desc": data["desc"],
            "success": code == "00",
            "data": data,
            "signature": payos_codec.sign_params({"data": data}, self.payos.checksum_key),
        }

    # ------------------------------------------------------------------
    # Merchant API
    # ------------------------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self.timeout_next > 0:
            self.timeout_next -= 1
            raise httpx.ReadTimeout("sandbox timeout", request=request)
        if self.fail_next > 0:
            self.fail_next -= 1
            return httpx.Response(503, json={"message": "Service Unavailable"})

        url = str(request.url)
        if url.startswith(self.vnpay.api_url):
            return self._vnpay_api(json.loads(request.content or b"{}"))
        if url.startswith(self.payos.api_url):
            path = url[len(self.payos.api_url):].split("?")[0].rstrip("/")
            if request.method == "POST" and path == "/payment-requests":
                return self._payos_create(request, json.loads(request.content or b"{}"))
            if request.method == "POST" and path.startswith("/payment-requests/") and path.endswith("/cancel"):
                return self._payos_cancel(request, path.split("/")[-2], json.loads(request.content or b"{}"))
            if request.method == "GET" and path.startswith("/payment-requests/"):
                return self._payos_query(request, path.rsplit("/", 1)[-1])
        return httpx.Response(404, json={"message": "Not Found"})

    def _vnpay_signed(self, body: Dict[str, Any], fields) -> httpx.Response:
        body["vnp_SecureHash"] = vnpay_codec.sign_positional(
            [body.get(field, "") for field in fields], self.vnpay.hash_secret
        )
        return httpx.Response(200, json=body)

    def _vnpay_api(self, payload: Dict[str, Any]) -> httpx.Response:
        command = payload.get("vnp_Command")
        order_ref = payload.get("vnp_TxnRef", "")
        order = self.orders.get(order_ref)

        body = {
            "vnp_ResponseId": uuid.uuid4().hex,
            "vnp_Command": command,
            "vnp_TmnCode": self.vnpay.tmn_code,
            "vnp_TxnRef": order_ref,
            "vnp_BankCode": "NCB",
            "vnp_PayDate": format_gateway_date(_now()),
            "vnp_OrderInfo": payload.get("vnp_OrderInfo", ""),
        }

        if order is None or order["gateway"] != "vnpay":
            body.update({"vnp_ResponseCode": "91", "vnp_Message": "Transaction not found"})
            fields = QUERY_RESPONSE_FIELDS if command == "querydr" else REFUND_RESPONSE_FIELDS
            return self._vnpay_signed(body, fields)

        if command == "querydr":
            body.update({
                "vnp_ResponseCode": "00",
                "vnp_Message": "QueryDR Success",
                "vnp_Amount": str(order["amount"] * 100),
                "vnp_TransactionNo": order["transaction_no"],
                "vnp_TransactionType": "01",
                "vnp_TransactionStatus": order["status"],
                "vnp_PromotionCode": "",
                "vnp_PromotionAmount": "",
            })
            return self._vnpay_signed(body, QUERY_RESPONSE_FIELDS)

        if command == "refund":
            body.update({
                "vnp_ResponseCode": self.refund_response_code,
                "vnp_Message": "Refund success" if self.refund_response_code == "00" else "Refund failed",
                "vnp_Amount": payload.get("vnp_Amount", ""),
                "vnp_TransactionNo": str(uuid.uuid4().int)[:8],
                "vnp_TransactionType": payload.get("vnp_TransactionType", ""),
                "vnp_TransactionStatus": "05" if self.refund_response_code == "00" else "09",
            })
            return self._vnpay_signed(body, REFUND_RESPONSE_FIELDS)

        return httpx.Response(400, json={"message": f"Unknown command {command}"})

    def _payos_authorized(self, request: httpx.Request) -> bool:
        return (
            request.headers.get("x-client-id") == self.payos.client_id
            and request.headers.get("x-api-key") == self.payos.api_key
        )

    def _payos_response(self, code: str, desc: str, data: Optional[Dict[str, Any]] = None) -> httpx.Response:
        body: Dict[str, Any] = {"code": code, "desc": desc, "data": data}
        if data is not None:
            body["signature"] = payos_codec.sign_params({"data": data}, self.payos.checksum_key)
        return httpx.Response(200, json=body)

    def _payos_create(self, request: httpx.Request, payload: Dict[str, Any]) -> httpx.Response:
        if not self._payos_authorized(request):
            return httpx.Response(401, json={"code": "401", "desc": "Unauthorized"})

        signed = {key: payload.get(key) for key in ("amount", "cancelUrl", "description", "orderCode", "returnUrl")}
        if not payos_codec.verify(signed, payload.get("signature"), self.payos.checksum_key):
            return self._payos_response("20", "Signature is invalid")

        order_ref = str(payload["orderCode"])
        if order_ref in self.orders:
            return self._payos_response("231", "Order code already exists")
        self.register("payos", order_ref, payload["amount"])

        link_id = uuid.uuid4().hex
        return self._payos_response("00", "success", {
            "bin": "970422",
            "accountNumber": "12345678",
            "accountName": "COURTPAY",
            "amount": payload["amount"],
            "description": payload["description"],
            "orderCode": payload["orderCode"],
            "currency": "VND",
            "paymentLinkId": link_id,
            "status": "PENDING",
            "checkoutUrl": f"https://pay.payos.vn/web/{link_id}",
            "qrCode": f"00020101021238570010A000000727{order_ref}",
        })

    def _payos_query(self, request: httpx.Request, order_code: str) -> httpx.Response:
        if not self._payos_authorized(request):
            return httpx.Response(401, json={"code": "401", "desc": "Unauthorized"})

        order = self.orders.get(order_code)
        if order is None or order["gateway"] != "payos":
            return self._payos_response("101", "Payment request not found")

        paid = order["status"] == "PAID"
        transactions = []
        if paid:
            transactions.append({
                "reference": f"FT{order_code}",
                "amount": order["amount"],
                "accountNumber": "12345678",
                "description": "Court booking",
                "transactionDateTime": _now().isoformat(),
            })
        return self._payos_response("00", "success", {
            "id": uuid.uuid4().hex,
            "orderCode": int(order_code),
            "amount": order["amount"],
            "amountPaid": order["amount"] if paid else 0,
            "amountRemaining": 0 if paid else order["amount"],
            "status": order["status"],
            "createdAt": _now().isoformat(),
            "transactions": transactions,
            "cancellationReason": order.get("cancellation_reason"),
            "canceledAt": order.get("canceled_at"),
        })

    def _payos_cancel(self, request: httpx.Request, order_code: str, payload: Dict[str, Any]) -> httpx.Response:
        if not self._payos_authorized(request):
            return httpx.Response(401, json={"code": "401", "desc": "Unauthorized"})

        order = self.orders.get(order_code)
        if order is None or order["gateway"] != "payos":
            return self._payos_response("101", "Payment request not found")
        if order["status"] != "PENDING":
            return self._payos_response("102", f"Payment request is {order['status']}")

        order["status"] = "CANCELLED"
        order["cancellation_reason"] = payload.get("cancellationReason")
        order["canceled_at"] = _now().isoformat()
        return self._payos_query(request, order_code)
