"""
API Dependencies

Wires the payment core together once per process and hands the pieces to
route handlers through FastAPI's Depends.
"""
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import Settings, payos_config, vnpay_config
from ..mocks.payment_processor import GatewaySandbox
from ..services.callback_service import CallbackService
from ..services.event_service import EventBus
from ..services.expiration_sweeper import ExpirationSweeper
from ..services.gateway_client import GatewayClient
from ..services.payment_service import PaymentService
from ..services.payos_client import PayOSClient
from ..services.reconciliation_service import ReconciliationService
from ..services.transaction_service import TransactionStore
from ..services.vnpay_client import VNPayClient


@dataclass
class PaymentServices:
    store: TransactionStore
    event_bus: EventBus
    clients: Dict[str, GatewayClient]
    payments: PaymentService
    callbacks: CallbackService
    reconciliation: ReconciliationService
    sweeper: ExpirationSweeper
    sandbox: Optional[GatewaySandbox] = None


def build_services(
    source: Settings,
    session_factory: async_sessionmaker,
    event_bus: Optional[EventBus] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock=None,
    retry_wait=None
) -> PaymentServices:
    """
    Build the payment core from settings.

    Raises:
        ConfigurationError: If either gateway is missing credentials or URLs
    """
    vnpay = vnpay_config(source)
    payos = payos_config(source)

    sandbox = None
    if transport is None and source.sandbox_mode:
        sandbox = GatewaySandbox(vnpay, payos)
        transport = sandbox.transport()

    client_options = {
        "timeout_seconds": source.gateway_timeout_seconds,
        "query_max_attempts": source.query_max_attempts,
        "transport": transport,
        "retry_wait": retry_wait,
        "clock": clock,
    }
    clients: Dict[str, GatewayClient] = {
        "vnpay": VNPayClient(vnpay, **client_options),
        "payos": PayOSClient(payos, **client_options),
    }

    bus = event_bus or EventBus()
    store = TransactionStore(
        session_factory,
        bus,
        clock=clock,
        payment_timeout_minutes=source.payment_timeout_minutes,
        max_extensions=source.max_payment_extensions,
    )

    payments = PaymentService(store, clients)
    bus.subscribe(payments.release_payment_link)

    return PaymentServices(
        store=store,
        event_bus=bus,
        clients=clients,
        payments=payments,
        callbacks=CallbackService(store, clients),
        reconciliation=ReconciliationService(store, clients),
        sweeper=ExpirationSweeper(
            store,
            clock=clock,
            event_redelivery_seconds=source.event_redelivery_seconds,
        ),
        sandbox=sandbox,
    )


def get_services(request: Request) -> PaymentServices:
    return request.app.state.services


def get_store(request: Request) -> TransactionStore:
    return get_services(request).store


def get_callback_service(request: Request) -> CallbackService:
    return get_services(request).callbacks


def get_reconciliation_service(request: Request) -> ReconciliationService:
    return get_services(request).reconciliation


def get_event_bus(request: Request) -> EventBus:
    return get_services(request).event_bus


def client_ip(request: Request) -> str:
    """Caller address forwarded to the gateways (X-Forwarded-For aware)."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"
