"""
Tests for payment creation, callback acknowledgement, gateway queries and refunds.
"""
import pytest

from courtpay.exceptions import (
    DuplicateOrderRefError,
    GatewayRejectedError,
    GatewayUnavailableError,
    RefundExceedsBalanceError,
    RefundNotSupportedError,
    SignatureInvalidError,
    UnknownOrderRefError,
)
from courtpay.models.transactions import TransactionStatus, TransactionType
from courtpay.services.callback_service import (
    ACK_ALREADY_CONFIRMED,
    ACK_INVALID_AMOUNT,
    ACK_INVALID_SIGNATURE,
    ACK_NOT_FOUND,
    ACK_OK,
)


async def _vnpay_payment(services, sandbox, amount: int = 200000):
    txn, redirect = await services.payments.create_payment("vnpay", amount, "user_001", "Court booking")
    sandbox.register("vnpay", txn.order_ref, amount)
    return txn


async def _paid_vnpay_payment(services, sandbox, amount: int = 200000):
    txn = await _vnpay_payment(services, sandbox, amount)
    sandbox.pay(txn.order_ref)
    await services.callbacks.process("vnpay", sandbox.vnpay_callback(txn.order_ref, amount), "webhook")
    return txn


class TestCreatePayment:

    @pytest.mark.asyncio
    async def test_vnpay_payment_records_create_date(self, services) -> None:
        txn, redirect = await services.payments.create_payment(
            "vnpay", 200000, "user_001", "Court booking", booking_ref="booking_abc"
        )

        assert txn.status == TransactionStatus.PENDING
        assert txn.method.value == "vnpay"
        assert txn.metadata["gateway_create_date"] == redirect.create_date == "20251019143000"
        assert redirect.order_ref == txn.order_ref
        assert f"vnp_TxnRef={txn.order_ref}" in redirect.redirect_url

    @pytest.mark.asyncio
    async def test_payos_payment_records_link(self, services) -> None:
        txn, redirect = await services.payments.create_payment("payos", 150000, "user_001", "Court booking")

        assert redirect.qr_code
        assert txn.metadata["payment_link_id"] == redirect.payment_link_id

    @pytest.mark.asyncio
    async def test_gateway_failure_cancels_record(self, services, sandbox, recorder) -> None:
        sandbox.fail_next = 1

        with pytest.raises(GatewayUnavailableError):
            await services.payments.create_payment("payos", 150000, "user_001", "Court booking")

        cancelled = recorder.of_type("payment.cancelled")
        assert len(cancelled) == 1
        txn = await services.store.get(cancelled[0].transaction_id)
        assert txn.status == TransactionStatus.FAILED
        assert txn.metadata["cancelled_by"] == "system"

    @pytest.mark.asyncio
    async def test_colliding_order_ref_draws_another(self, services, monkeypatch) -> None:
        refs = iter(["251019143000123", "251019143000123", "251019143000456"])
        monkeypatch.setattr(services.clients["payos"], "generate_order_ref", lambda: next(refs))

        first, _ = await services.payments.create_payment("payos", 150000, "user_001", "Court A")
        second, redirect = await services.payments.create_payment("payos", 150000, "user_002", "Court B")

        assert first.order_ref == "251019143000123"
        assert second.order_ref == redirect.order_ref == "251019143000456"

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_collisions(self, services, sandbox, monkeypatch) -> None:
        monkeypatch.setattr(services.clients["payos"], "generate_order_ref", lambda: "251019143000123")
        await services.payments.create_payment("payos", 150000, "user_001", "Court A")
        sent = len(sandbox.requests)

        with pytest.raises(DuplicateOrderRefError):
            await services.payments.create_payment("payos", 150000, "user_002", "Court B")

        assert len(sandbox.requests) == sent


class TestPaymentLinkRelease:

    @pytest.mark.asyncio
    async def test_cancel_closes_payos_link(self, services, sandbox) -> None:
        txn, _ = await services.payments.create_payment("payos", 150000, "user_001", "Court booking")

        assert await services.store.cancel(txn.id, "user_cancelled", operator="user_001")

        order = sandbox.orders[txn.order_ref]
        assert order["status"] == "CANCELLED"
        assert order["cancellation_reason"] == "user_cancelled"
        assert (await services.store.get(txn.id)).metadata["payment_link_cancelled"] is True

    @pytest.mark.asyncio
    async def test_expiry_closes_payos_link(self, services, sandbox, clock) -> None:
        txn, _ = await services.payments.create_payment("payos", 150000, "user_001", "Court booking")
        clock.advance(minutes=16)

        report = await services.sweeper.sweep()

        assert report.expired == 1
        assert sandbox.orders[txn.order_ref]["status"] == "CANCELLED"
        assert sandbox.orders[txn.order_ref]["cancellation_reason"] == "timeout"

    @pytest.mark.asyncio
    async def test_gateway_outage_is_only_logged(self, services, sandbox, recorder) -> None:
        txn, _ = await services.payments.create_payment("payos", 150000, "user_001", "Court booking")
        sandbox.fail_next = 1

        assert await services.store.cancel(txn.id, "user_cancelled")

        stored = await services.store.get(txn.id)
        assert stored.status == TransactionStatus.FAILED
        assert stored.pending_events == []
        assert "payment_link_cancelled" not in stored.metadata
        assert sandbox.orders[txn.order_ref]["status"] == "PENDING"
        assert len(recorder.of_type("payment.cancelled")) == 1

    @pytest.mark.asyncio
    async def test_vnpay_has_no_link_to_cancel(self, services, sandbox) -> None:
        txn = await _vnpay_payment(services, sandbox)
        sent = len(sandbox.requests)

        assert await services.store.cancel(txn.id, "user_cancelled")

        assert len(sandbox.requests) == sent
        assert "payment_link_cancelled" not in (await services.store.get(txn.id)).metadata


class TestCallbackAcknowledgement:

    @pytest.mark.asyncio
    async def test_confirm_then_already_confirmed(self, services, sandbox, recorder) -> None:
        txn = await _vnpay_payment(services, sandbox)
        params = sandbox.vnpay_callback(txn.order_ref, 200000)

        first = await services.callbacks.acknowledge("vnpay", params, "webhook")
        second = await services.callbacks.acknowledge("vnpay", params, "webhook")

        assert first.code == ACK_OK
        assert first.message == "Confirm Success"
        assert second.code == ACK_ALREADY_CONFIRMED
        assert len(recorder.of_type("payment.success")) == 1

    @pytest.mark.asyncio
    async def test_bad_signature(self, services, sandbox) -> None:
        txn = await _vnpay_payment(services, sandbox)
        params = sandbox.vnpay_callback(txn.order_ref, 200000)
        params["vnp_ResponseCode"] = "24"

        ack = await services.callbacks.acknowledge("vnpay", params, "webhook")

        assert ack.code == ACK_INVALID_SIGNATURE
        assert (await services.store.get(txn.id)).status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_order(self, services, sandbox) -> None:
        ack = await services.callbacks.acknowledge("vnpay", sandbox.vnpay_callback("UNKNOWN1", 200000), "webhook")

        assert ack.code == ACK_NOT_FOUND

    @pytest.mark.asyncio
    async def test_wrong_amount(self, services, sandbox) -> None:
        txn = await _vnpay_payment(services, sandbox)

        ack = await services.callbacks.acknowledge("vnpay", sandbox.vnpay_callback(txn.order_ref, 100000), "webhook")

        assert ack.code == ACK_INVALID_AMOUNT
        assert (await services.store.get(txn.id)).status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_return_url_raises_instead_of_acking(self, services, sandbox) -> None:
        params = sandbox.vnpay_callback("UNKNOWN1", 200000)
        with pytest.raises(UnknownOrderRefError):
            await services.callbacks.process("vnpay", params, "return")

        params["vnp_Amount"] = "1"
        with pytest.raises(SignatureInvalidError):
            await services.callbacks.process("vnpay", params, "return")

    @pytest.mark.asyncio
    async def test_payos_webhook(self, services, sandbox, recorder) -> None:
        txn, _ = await services.payments.create_payment("payos", 150000, "user_001", "Court booking")

        ack = await services.callbacks.acknowledge("payos", sandbox.payos_webhook(txn.order_ref, 150000), "webhook")

        assert ack.code == ACK_OK
        assert ack.transaction.status == TransactionStatus.SUCCEEDED
        assert recorder.of_type("payment.success")[0].method.value == "payos"


class TestQuery:

    @pytest.mark.asyncio
    async def test_query_applies_paid_status(self, services, sandbox, recorder) -> None:
        txn = await _vnpay_payment(services, sandbox)
        sandbox.pay(txn.order_ref)

        result = await services.reconciliation.query(txn.order_ref)

        assert result.applied
        assert result.transaction.status == TransactionStatus.SUCCEEDED
        assert result.transaction.metadata["provenance"] == "reconciliation"
        assert len(recorder.of_type("payment.success")) == 1

    @pytest.mark.asyncio
    async def test_query_of_open_order_changes_nothing(self, services, sandbox) -> None:
        txn = await _vnpay_payment(services, sandbox)

        result = await services.reconciliation.query(txn.order_ref)

        assert not result.applied
        assert result.transaction.version == txn.version
        assert (await services.store.get(txn.id)).status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_query_after_webhook_is_noop(self, services, sandbox, recorder) -> None:
        txn = await _paid_vnpay_payment(services, sandbox)

        result = await services.reconciliation.query(txn.order_ref)

        assert not result.applied
        assert len(recorder.of_type("payment.success")) == 1

    @pytest.mark.asyncio
    async def test_query_payos(self, services, sandbox) -> None:
        txn, _ = await services.payments.create_payment("payos", 150000, "user_001", "Court booking")
        sandbox.fail(txn.order_ref)

        result = await services.reconciliation.query(txn.order_ref)

        assert result.applied
        assert result.transaction.status == TransactionStatus.FAILED

    @pytest.mark.asyncio
    async def test_query_unknown_order(self, services) -> None:
        with pytest.raises(UnknownOrderRefError):
            await services.reconciliation.query("NOPE")


class TestRefund:

    @pytest.mark.asyncio
    async def test_partial_refunds_until_exhausted(self, services, sandbox) -> None:
        txn = await _paid_vnpay_payment(services, sandbox)

        first = await services.reconciliation.refund(txn.order_ref, 120000, "partial", "admin")
        second = await services.reconciliation.refund(txn.order_ref, 80000, "partial", "admin")

        assert first.status == TransactionStatus.REFUNDED
        assert first.type == TransactionType.REFUND_PARTIAL
        assert second.status == TransactionStatus.REFUNDED

        summary = await services.reconciliation.refund_summary(txn.order_ref)
        assert summary.refunded_amount == 200000
        assert summary.remaining == 0
        assert summary.refund_count == 2

        parent = await services.store.get(txn.id)
        assert parent.status == TransactionStatus.SUCCEEDED
        assert parent.amount == 200000

    @pytest.mark.asyncio
    async def test_over_balance_refund_makes_no_remote_call(self, services, sandbox) -> None:
        txn = await _paid_vnpay_payment(services, sandbox)
        await services.reconciliation.refund(txn.order_ref, 150000, "partial", "admin")
        calls_before = len(sandbox.requests)

        with pytest.raises(RefundExceedsBalanceError):
            await services.reconciliation.refund(txn.order_ref, 60000, "partial", "admin")

        assert len(sandbox.requests) == calls_before

    @pytest.mark.asyncio
    async def test_full_refund(self, services, sandbox) -> None:
        txn = await _paid_vnpay_payment(services, sandbox)

        refund = await services.reconciliation.refund(txn.order_ref, None, "full", "admin", reason="rain")

        assert refund.type == TransactionType.REFUND_FULL
        assert refund.amount == 200000
        assert refund.metadata["refund_reason"] == "rain"

    @pytest.mark.asyncio
    async def test_declined_refund_releases_balance(self, services, sandbox) -> None:
        txn = await _paid_vnpay_payment(services, sandbox)
        sandbox.refund_response_code = "94"

        with pytest.raises(GatewayRejectedError):
            await services.reconciliation.refund(txn.order_ref, 50000, "partial", "admin")

        refunds = await services.store.list_refunds(txn.id)
        assert refunds[0].status == TransactionStatus.FAILED
        assert (await services.reconciliation.refund_summary(txn.order_ref)).remaining == 200000

    @pytest.mark.asyncio
    async def test_timeout_leaves_refund_pending(self, services, sandbox) -> None:
        txn = await _paid_vnpay_payment(services, sandbox)
        sandbox.timeout_next = 1

        with pytest.raises(GatewayUnavailableError):
            await services.reconciliation.refund(txn.order_ref, 50000, "partial", "admin")

        refunds = await services.store.list_refunds(txn.id)
        assert refunds[0].status == TransactionStatus.PENDING
        assert refunds[0].metadata["requires_requery"] is True
        assert (await services.reconciliation.refund_summary(txn.order_ref)).remaining == 150000

    @pytest.mark.asyncio
    async def test_payos_refund_not_supported(self, services, sandbox) -> None:
        txn, _ = await services.payments.create_payment("payos", 150000, "user_001", "Court booking")
        await services.callbacks.process("payos", sandbox.payos_webhook(txn.order_ref, 150000), "webhook")
        calls_before = len(sandbox.requests)

        with pytest.raises(RefundNotSupportedError):
            await services.reconciliation.refund(txn.order_ref, 50000, "partial", "admin")

        assert await services.store.list_refunds(txn.id) == []
        assert len(sandbox.requests) == calls_before
