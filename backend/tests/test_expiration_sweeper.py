"""
Tests for the expiration sweeper and its scheduler.
"""
import asyncio

import pytest

from courtpay.models.transactions import CallbackOutcome, CallbackResult, PaymentMethod, TransactionStatus
from courtpay.services.scheduler import SWEEP_JOB_ID, SweepScheduler


async def _create(store, order_ref: str, amount: int = 200000):
    return await store.create(
        order_ref=order_ref,
        amount=amount,
        method=PaymentMethod.PAYOS,
        user_ref="user_001",
        gateway="payos",
    )


def _paid(order_ref: str, amount: int = 200000) -> CallbackResult:
    return CallbackResult(
        gateway="payos",
        valid=True,
        order_ref=order_ref,
        amount=amount,
        response_code="00",
        success=True,
        outcome=CallbackOutcome.SUCCEEDED,
    )


@pytest.fixture
def sweeper(services):
    return services.sweeper


class TestSweep:

    @pytest.mark.asyncio
    async def test_expires_only_overdue_pending_payments(self, store, sweeper, clock, recorder) -> None:
        overdue = await _create(store, "1001")
        paid = await _create(store, "1002")
        await store.apply_callback_result("1002", _paid("1002"), "webhook")

        clock.advance(minutes=10)
        fresh = await _create(store, "1003")
        clock.advance(minutes=6)

        report = await sweeper.sweep()

        assert report.examined == 1
        assert report.expired == 1
        assert (await store.get(overdue.id)).status == TransactionStatus.FAILED
        assert (await store.get(paid.id)).status == TransactionStatus.SUCCEEDED
        assert (await store.get(fresh.id)).status == TransactionStatus.PENDING
        assert [event.transaction_id for event in recorder.of_type("payment.expired")] == [overdue.id]

    @pytest.mark.asyncio
    async def test_second_sweep_is_idempotent(self, store, sweeper, clock, recorder) -> None:
        await _create(store, "1001")
        clock.advance(minutes=16)

        await sweeper.sweep()
        report = await sweeper.sweep()

        assert report.examined == 0
        assert len(recorder.of_type("payment.expired")) == 1

    @pytest.mark.asyncio
    async def test_extended_payment_survives(self, store, sweeper, clock) -> None:
        txn = await _create(store, "1001")
        clock.advance(minutes=14)
        await store.extend(txn.id)
        clock.advance(minutes=5)

        report = await sweeper.sweep()

        assert report.expired == 0
        assert (await store.get(txn.id)).status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_pending_refund_records_are_not_expired(self, store, sweeper, clock) -> None:
        parent = await store.create(
            order_ref="ORD1", amount=200000, method=PaymentMethod.VNPAY, user_ref="user_001", gateway="vnpay"
        )
        await store.apply_callback_result(
            "ORD1",
            CallbackResult(gateway="vnpay", valid=True, order_ref="ORD1", amount=200000,
                           response_code="00", success=True, outcome=CallbackOutcome.SUCCEEDED),
            "webhook",
        )
        refund = await store.reserve_refund(parent.id, 50000, "partial", "admin")
        clock.advance(hours=1)

        await sweeper.sweep()

        assert (await store.get(refund.id)).status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_one_failing_record_does_not_stop_the_pass(self, store, sweeper, clock, monkeypatch) -> None:
        broken = await _create(store, "1001")
        healthy = await _create(store, "1002")
        clock.advance(minutes=16)

        original_expire = store.expire

        async def flaky_expire(transaction_id, reason="timeout", as_of=None):
            if transaction_id == broken.id:
                raise RuntimeError("disk I/O error")
            return await original_expire(transaction_id, reason, as_of=as_of)

        monkeypatch.setattr(store, "expire", flaky_expire)

        report = await sweeper.sweep()

        assert report.failed == 1
        assert report.expired == 1
        assert (await store.get(healthy.id)).status == TransactionStatus.FAILED
        assert (await store.get(broken.id)).status == TransactionStatus.PENDING


class TestEventRedelivery:

    @pytest.mark.asyncio
    async def test_undelivered_event_is_published_again(self, store, sweeper, clock, recorder) -> None:
        txn = await _create(store, "1001")
        recorder.fail = True
        await store.apply_callback_result("1001", _paid("1001"), "webhook")
        recorder.fail = False

        report = await sweeper.sweep()
        assert report.republished == 0

        clock.advance(seconds=31)
        report = await sweeper.sweep()

        assert report.republished == 1
        assert len(recorder.of_type("payment.success")) == 1
        assert (await store.get(txn.id)).pending_event is None

    @pytest.mark.asyncio
    async def test_still_failing_subscriber_keeps_marker(self, store, sweeper, clock, recorder) -> None:
        txn = await _create(store, "1001")
        recorder.fail = True
        await store.apply_callback_result("1001", _paid("1001"), "webhook")

        clock.advance(seconds=31)
        report = await sweeper.sweep()

        assert report.republished == 0
        assert (await store.get(txn.id)).pending_event == "payment.success"

    @pytest.mark.asyncio
    async def test_every_owed_event_is_redelivered_in_order(self, store, sweeper, clock, recorder) -> None:
        txn = await _create(store, "1001")
        recorder.fail = True
        await store.extend(txn.id)
        await store.apply_callback_result("1001", _paid("1001"), "webhook")
        assert (await store.get(txn.id)).pending_events == ["payment.extended", "payment.success"]

        recorder.fail = False
        clock.advance(minutes=5)
        report = await sweeper.sweep()

        assert report.republished == 1
        assert [event.event_type for event in recorder.events] == ["payment.extended", "payment.success"]
        assert (await store.get(txn.id)).pending_events == []


class TestSweepRacingCallbacks:

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_each_order_gets_exactly_one_outcome(self, services, store, sweeper, sandbox, clock, recorder) -> None:
        """Webhooks landing mid-sweep either win the transition or become late confirmations."""
        orders = [await _create(store, f"10{index:02d}") for index in range(5)]
        clock.advance(minutes=16)

        results = await asyncio.gather(
            sweeper.sweep(),
            *[
                services.callbacks.acknowledge("payos", sandbox.payos_webhook(txn.order_ref, txn.amount), "webhook")
                for txn in orders
            ],
        )

        for ack in results[1:]:
            assert ack.code in ("00", "02")

        for txn in orders:
            events = [event.event_type for event in recorder.events if event.transaction_id == txn.id]
            stored = await store.get(txn.id)
            assert len(events) == 1
            if events == ["payment.expired"]:
                assert stored.status == TransactionStatus.FAILED
                assert stored.metadata["late_confirmation"] is True
            else:
                assert events == ["payment.success"]
                assert stored.status == TransactionStatus.SUCCEEDED
                assert "anomalies" not in stored.metadata


class TestScheduler:

    @pytest.mark.asyncio
    async def test_registers_single_interval_job(self, sweeper) -> None:
        scheduler = SweepScheduler(sweeper, interval_seconds=60)

        scheduler.start()
        try:
            assert scheduler.running
            job = scheduler.get_job()
            assert job.id == SWEEP_JOB_ID
            assert job.max_instances == 1
            assert job.coalesce is True
        finally:
            scheduler.shutdown(wait=False)
