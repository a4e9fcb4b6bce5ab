"""
Tests for the VNPay client against the in-process sandbox.
"""
import json
from urllib.parse import parse_qsl, urlsplit

import httpx
import pytest
from tenacity import wait_none

from courtpay.config import vnpay_config
from courtpay.exceptions import (
    GatewayRejectedError,
    GatewayUnavailableError,
    InvalidAmountError,
    SignatureInvalidError,
)
from courtpay.models.transactions import CallbackOutcome
from courtpay.services.signature_service import vnpay_codec
from courtpay.services.vnpay_client import VNPayClient

ORDER_REF = "251019143000A1B2C3"
CREATE_DATE = "20251019143000"


@pytest.fixture
def client(test_settings, sandbox, clock) -> VNPayClient:
    return VNPayClient(
        vnpay_config(test_settings),
        transport=sandbox.transport(),
        retry_wait=wait_none(),
        clock=clock,
    )


class TestPaymentUrl:
    """Local redirect URL construction."""

    @pytest.mark.asyncio
    async def test_redirect_url_is_signed_and_scaled(self, client, test_settings) -> None:
        redirect = await client.create_payment_request(
            ORDER_REF, 200000, "Dat san cau long 18h", client_ip="10.0.0.8"
        )

        url = urlsplit(redirect.redirect_url)
        params = dict(parse_qsl(url.query))

        assert redirect.redirect_url.startswith(test_settings.vnpay_payment_url + "?")
        assert params["vnp_Amount"] == "20000000"
        assert params["vnp_TxnRef"] == ORDER_REF
        assert params["vnp_IpAddr"] == "10.0.0.8"
        assert params["vnp_CreateDate"] == CREATE_DATE
        assert "Dat+san+cau+long+18h" in url.query
        assert vnpay_codec.verify(params, params["vnp_SecureHash"], test_settings.vnpay_hash_secret)
        assert redirect.create_date == CREATE_DATE

    @pytest.mark.asyncio
    async def test_redirect_needs_no_network(self, client, sandbox) -> None:
        await client.create_payment_request(ORDER_REF, 200000, "Court booking")

        assert sandbox.requests == []

    @pytest.mark.parametrize("amount", [0, -5000, 1.5, True])
    def test_rejects_invalid_amount(self, client, amount) -> None:
        with pytest.raises(InvalidAmountError):
            client.to_gateway_amount(amount)

    def test_order_ref_uses_gateway_local_time(self, client) -> None:
        order_ref = client.generate_order_ref()

        assert order_ref.startswith("251019143000")
        assert len(order_ref) == 18
        assert order_ref.isalnum()


class TestCallbackVerification:
    """Return URL / IPN parameters."""

    def test_successful_payment(self, client, sandbox) -> None:
        result = client.verify_callback(sandbox.vnpay_callback(ORDER_REF, 200000))

        assert result.valid
        assert result.success
        assert result.outcome == CallbackOutcome.SUCCEEDED
        assert result.order_ref == ORDER_REF
        assert result.amount == 200000
        assert result.external_transaction_no == "14226112"
        assert result.bank_ref == f"VNP{ORDER_REF}"

    def test_cancelled_payment(self, client, sandbox) -> None:
        result = client.verify_callback(
            sandbox.vnpay_callback(ORDER_REF, 200000, response_code="24", transaction_status="02")
        )

        assert result.valid
        assert not result.success
        assert result.outcome == CallbackOutcome.FAILED
        assert result.response_code == "24"

    def test_response_ok_but_transaction_status_failed(self, client, sandbox) -> None:
        result = client.verify_callback(
            sandbox.vnpay_callback(ORDER_REF, 200000, response_code="00", transaction_status="02")
        )

        assert not result.success
        assert result.outcome == CallbackOutcome.FAILED

    def test_tampered_amount_is_invalid(self, client, sandbox) -> None:
        params = sandbox.vnpay_callback(ORDER_REF, 200000)
        params["vnp_Amount"] = "100"

        assert not client.verify_callback(params).valid

    def test_missing_signature_is_invalid(self, client, sandbox) -> None:
        params = sandbox.vnpay_callback(ORDER_REF, 200000)
        del params["vnp_SecureHash"]

        assert not client.verify_callback(params).valid

    def test_fractional_vnd_amount_is_not_parsed(self, client, test_settings) -> None:
        params = {"vnp_TxnRef": ORDER_REF, "vnp_Amount": "12345", "vnp_ResponseCode": "00"}
        params["vnp_SecureHash"] = vnpay_codec.sign_params(params, test_settings.vnpay_hash_secret)

        result = client.verify_callback(params)

        assert result.valid
        assert result.amount is None


class TestQuery:
    """querydr over the merchant API."""

    @pytest.mark.asyncio
    async def test_paid_order(self, client, sandbox) -> None:
        sandbox.register("vnpay", ORDER_REF, 200000)
        sandbox.pay(ORDER_REF)

        result = await client.query_transaction(ORDER_REF, CREATE_DATE)

        assert result.outcome == CallbackOutcome.SUCCEEDED
        assert result.gateway_status == "00"
        assert result.amount == 200000

        payload = json.loads(sandbox.requests[-1].content)
        assert payload["vnp_Command"] == "querydr"
        assert payload["vnp_TransactionDate"] == CREATE_DATE

    @pytest.mark.asyncio
    async def test_open_order_has_no_outcome(self, client, sandbox) -> None:
        sandbox.register("vnpay", ORDER_REF, 200000)

        result = await client.query_transaction(ORDER_REF, CREATE_DATE)

        assert result.outcome is None
        assert result.gateway_status == "01"

    @pytest.mark.asyncio
    async def test_unknown_order_is_rejected(self, client) -> None:
        with pytest.raises(GatewayRejectedError):
            await client.query_transaction("NOPE", CREATE_DATE)

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, client, sandbox) -> None:
        sandbox.register("vnpay", ORDER_REF, 200000)
        sandbox.fail_next = 1
        sandbox.timeout_next = 1

        result = await client.query_transaction(ORDER_REF, CREATE_DATE)

        assert result.gateway_status == "01"
        assert len(sandbox.requests) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, client, sandbox) -> None:
        sandbox.register("vnpay", ORDER_REF, 200000)
        sandbox.fail_next = 5

        with pytest.raises(GatewayUnavailableError):
            await client.query_transaction(ORDER_REF, CREATE_DATE)

        assert len(sandbox.requests) == 3

    @pytest.mark.asyncio
    async def test_forged_response_signature(self, test_settings) -> None:
        def forged(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={
                "vnp_ResponseCode": "00",
                "vnp_TxnRef": ORDER_REF,
                "vnp_TransactionStatus": "00",
                "vnp_SecureHash": "deadbeef",
            })

        client = VNPayClient(vnpay_config(test_settings), transport=httpx.MockTransport(forged), retry_wait=wait_none())

        with pytest.raises(SignatureInvalidError):
            await client.query_transaction(ORDER_REF, CREATE_DATE)

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, test_settings) -> None:
        calls = []

        def bad_request(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, json={"message": "Bad Request"})

        client = VNPayClient(vnpay_config(test_settings), transport=httpx.MockTransport(bad_request), retry_wait=wait_none())

        with pytest.raises(GatewayRejectedError):
            await client.query_transaction(ORDER_REF, CREATE_DATE)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_non_json_body_is_rejected(self, test_settings) -> None:
        client = VNPayClient(
            vnpay_config(test_settings),
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>maintenance</html>")),
            retry_wait=wait_none(),
        )

        with pytest.raises(GatewayRejectedError):
            await client.query_transaction(ORDER_REF, CREATE_DATE)


class TestRefund:
    """refund over the merchant API."""

    @pytest.mark.asyncio
    async def test_partial_refund(self, client, sandbox) -> None:
        sandbox.register("vnpay", ORDER_REF, 200000)
        sandbox.pay(ORDER_REF)

        result = await client.process_refund(ORDER_REF, CREATE_DATE, 50000, "partial", "admin@courtpay")

        assert result.success
        assert result.amount == 50000
        assert result.kind == "partial"

        payload = json.loads(sandbox.requests[-1].content)
        assert payload["vnp_TransactionType"] == "03"
        assert payload["vnp_Amount"] == "5000000"
        assert payload["vnp_CreateBy"] == "admin@courtpay"

    @pytest.mark.asyncio
    async def test_full_refund_type(self, client, sandbox) -> None:
        sandbox.register("vnpay", ORDER_REF, 200000)
        sandbox.pay(ORDER_REF)

        await client.process_refund(ORDER_REF, CREATE_DATE, 200000, "full", "admin")

        assert json.loads(sandbox.requests[-1].content)["vnp_TransactionType"] == "02"

    @pytest.mark.asyncio
    async def test_declined_refund(self, client, sandbox) -> None:
        sandbox.register("vnpay", ORDER_REF, 200000)
        sandbox.refund_response_code = "94"

        result = await client.process_refund(ORDER_REF, CREATE_DATE, 50000, "partial", "admin")

        assert not result.success
        assert result.response_code == "94"

    @pytest.mark.asyncio
    async def test_refund_is_never_retried(self, client, sandbox) -> None:
        sandbox.register("vnpay", ORDER_REF, 200000)
        sandbox.fail_next = 1

        with pytest.raises(GatewayUnavailableError):
            await client.process_refund(ORDER_REF, CREATE_DATE, 50000, "partial", "admin")

        assert len(sandbox.requests) == 1
