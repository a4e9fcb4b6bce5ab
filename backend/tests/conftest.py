"""
Pytest configuration and fixtures.

Every test gets its own SQLite file, a controllable clock, and both gateway
clients wired to the in-process sandbox.
"""
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, List

import pytest
import pytest_asyncio
from tenacity import wait_none

from courtpay.api.deps import PaymentServices, build_services
from courtpay.config import Settings, payos_config, vnpay_config
from courtpay.db.init_db import build_engine, build_session_factory, initialize_database
from courtpay.mocks.payment_processor import GatewaySandbox
from courtpay.models.transactions import PaymentEvent
from courtpay.services.event_service import EventBus


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2025, 10, 19, 7, 30, 0)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class EventRecorder:
    """Subscriber that remembers every event; can be told to fail."""

    def __init__(self):
        self.events: List[PaymentEvent] = []
        self.fail = False

    async def __call__(self, event: PaymentEvent) -> None:
        if self.fail:
            raise RuntimeError("booking service unavailable")
        self.events.append(event)

    def of_type(self, event_type: str) -> List[PaymentEvent]:
        return [event for event in self.events if event.event_type == event_type]


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings."""
    return Settings(
        database_path=str(tmp_path / "courtpay_test.db"),
        vnpay_tmn_code="CPTEST01",
        vnpay_hash_secret="VNPAYTESTSECRET0123456789ABCDEF",
        vnpay_payment_url="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        vnpay_api_url="https://sandbox.vnpayment.vn/merchant_webapi/api/transaction",
        vnpay_return_url="http://localhost:5173/transactions/vnpay/return",
        payos_client_id="payos-client-test",
        payos_api_key="payos-api-key-test",
        payos_checksum_key="payos-checksum-test",
        payos_api_url="https://api-merchant.payos.vn/v2",
        payos_return_url="http://localhost:5173/transactions/payos/return",
        payos_cancel_url="http://localhost:5173/transactions/payos/cancel",
        payment_timeout_minutes=15,
        max_payment_extensions=2,
        event_redelivery_seconds=30,
        query_max_attempts=3,
        sandbox_mode=False,
        sweeper_enabled=False,
        log_level="DEBUG",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sandbox(test_settings: Settings) -> GatewaySandbox:
    return GatewaySandbox(vnpay_config(test_settings), payos_config(test_settings))


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest_asyncio.fixture
async def session_factory(test_settings: Settings) -> AsyncGenerator[Any, Any]:
    """Fresh database file per test."""
    engine = build_engine(test_settings.database_path)
    await initialize_database(engine, test_settings.database_path)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def services(
    test_settings: Settings,
    session_factory,
    sandbox: GatewaySandbox,
    clock: FakeClock,
    recorder: EventRecorder
) -> PaymentServices:
    bus = EventBus()
    bus.subscribe(recorder)
    return build_services(
        test_settings,
        session_factory,
        event_bus=bus,
        transport=sandbox.transport(),
        clock=clock,
        retry_wait=wait_none(),
    )


@pytest.fixture
def store(services: PaymentServices):
    return services.store
