"""
Gateway Client Contract

Shared behaviour of the VNPay and PayOS clients: amount scaling, order
reference generation, outbound HTTP with error classification, and bounded
retry for read-only calls.

Error classification for outbound calls:
- network error, timeout, HTTP 5xx -> GatewayUnavailableError (retryable for queries)
- HTTP 4xx, unparseable body      -> GatewayRejectedError (permanent)
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..exceptions import GatewayRejectedError, GatewayUnavailableError, InvalidAmountError
from ..models.gateways import GatewayQueryResult, GatewayRefundResult, PaymentRedirect
from ..models.transactions import CallbackResult
from .clock import SystemClock
from .signature_service import SignatureCodec

logger = logging.getLogger(__name__)

# Both gateways timestamp in Vietnam local time (no DST)
GATEWAY_TZ = timezone(timedelta(hours=7))

# Largest integer a JavaScript client can represent exactly
MAX_SAFE_INTEGER = 2 ** 53 - 1


def to_gateway_time(moment: datetime) -> datetime:
    """Convert a naive-UTC timestamp to GMT+7."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(GATEWAY_TZ)


def format_gateway_date(moment: datetime) -> str:
    """yyyyMMddHHmmss in GMT+7."""
    return to_gateway_time(moment).strftime("%Y%m%d%H%M%S")


class GatewayClient(ABC):
    """
    One payment gateway behind a uniform interface.

    Subclasses set gateway_id, amount_multiplier and codec, and implement
    the four operations. Amounts crossing this interface are always VND;
    scaling into the gateway unit happens only here.
    """

    gateway_id: str = ""
    amount_multiplier: int = 1
    supports_refunds: bool = True
    supports_link_cancellation: bool = False
    codec: SignatureCodec
    response_descriptions: Dict[str, str] = {}

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        query_max_attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_wait=None,
        clock=None
    ):
        """
        Args:
            timeout_seconds: Bound on every outbound call
            query_max_attempts: Attempts for read-only calls (refunds never retry)
            transport: httpx transport override (sandbox or tests)
            retry_wait: tenacity wait strategy between query attempts
            clock: Object with now() returning naive UTC
        """
        self._timeout = timeout_seconds
        self._query_max_attempts = max(1, query_max_attempts)
        self._transport = transport
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=8)
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Amounts
    # ------------------------------------------------------------------

    def to_gateway_amount(self, amount: int) -> int:
        """
        Scale a VND amount into the gateway unit.

        Raises:
            InvalidAmountError: If amount is not a positive integer
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(
                f"Amount must be a positive integer, got {amount!r}",
                details={"gateway": self.gateway_id, "amount": amount}
            )
        return amount * self.amount_multiplier

    def from_gateway_amount(self, value: Any) -> Optional[int]:
        """Parse a gateway-unit amount back to VND; None if absent or malformed."""
        if value is None or value == "":
            return None
        try:
            scaled = int(str(value))
        except ValueError:
            logger.warning(f"[{self.gateway_id}] Unparseable amount: {value!r}")
            return None
        if scaled % self.amount_multiplier:
            logger.warning(f"[{self.gateway_id}] Amount {scaled} is not a whole VND value")
            return None
        return scaled // self.amount_multiplier

    def describe_response_code(self, code: str) -> str:
        return self.response_descriptions.get(code, "Unknown response code")

    # ------------------------------------------------------------------
    # Outbound HTTP
    # ------------------------------------------------------------------

    def _http_client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout, **kwargs)

    async def _send(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """
        Perform one HTTP call and return the decoded JSON body.

        Raises:
            GatewayUnavailableError: Network failure, timeout or 5xx
            GatewayRejectedError: 4xx or a body that is not a JSON object
        """
        try:
            async with self._http_client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayUnavailableError(
                f"{self.gateway_id} timed out",
                details={"gateway": self.gateway_id, "url": url, "error": str(e)}
            ) from e
        except httpx.TransportError as e:
            raise GatewayUnavailableError(
                f"{self.gateway_id} unreachable",
                details={"gateway": self.gateway_id, "url": url, "error": str(e)}
            ) from e

        if response.status_code >= 500:
            raise GatewayUnavailableError(
                f"{self.gateway_id} answered HTTP {response.status_code}",
                details={"gateway": self.gateway_id, "url": url, "status": response.status_code}
            )
        if response.status_code >= 400:
            raise GatewayRejectedError(
                f"{self.gateway_id} answered HTTP {response.status_code}",
                details={
                    "gateway": self.gateway_id,
                    "url": url,
                    "status": response.status_code,
                    "body": response.text[:500],
                }
            )

        try:
            body = response.json()
        except ValueError as e:
            raise GatewayRejectedError(
                f"{self.gateway_id} returned a non-JSON body",
                details={"gateway": self.gateway_id, "url": url}
            ) from e
        if not isinstance(body, dict):
            raise GatewayRejectedError(
                f"{self.gateway_id} returned an unexpected body",
                details={"gateway": self.gateway_id, "url": url}
            )
        return body

    async def _with_query_retry(self, operation: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        """Run a read-only call with bounded exponential backoff on transient failures."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(GatewayUnavailableError),
            stop=stop_after_attempt(self._query_max_attempts),
            wait=self._retry_wait,
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"[{self.gateway_id}] Retrying query "
                        f"(attempt {attempt.retry_state.attempt_number}/{self._query_max_attempts})"
                    )
                return await operation()

    # ------------------------------------------------------------------
    # Gateway operations
    # ------------------------------------------------------------------

    @abstractmethod
    def generate_order_ref(self) -> str:
        """Fresh order reference in the gateway's accepted format."""

    @abstractmethod
    async def create_payment_request(
        self,
        order_ref: str,
        amount: int,
        description: str,
        return_url: Optional[str] = None,
        client_ip: str = "127.0.0.1"
    ) -> PaymentRedirect:
        """Build the redirect (VNPay) or payment link (PayOS) for an order."""

    @abstractmethod
    def verify_callback(self, raw_params: Mapping[str, Any]) -> CallbackResult:
        """Verify and normalize an inbound return/webhook payload."""

    @abstractmethod
    async def query_transaction(
        self,
        order_ref: str,
        original_txn_date: Optional[str] = None,
        client_ip: str = "127.0.0.1"
    ) -> GatewayQueryResult:
        """Ask the gateway for the current status of an order."""

    @abstractmethod
    async def process_refund(
        self,
        order_ref: str,
        original_txn_date: Optional[str],
        amount: int,
        kind: str,
        operator: str,
        client_ip: str = "127.0.0.1"
    ) -> GatewayRefundResult:
        """Request a full or partial refund. Never retried."""

    async def cancel_payment_link(self, order_ref: str, reason: Optional[str] = None) -> bool:
        """
        Invalidate the unpaid link of an order so it can no longer be paid.

        Gateways whose redirects simply lapse have nothing to cancel and
        return False.
        """
        return False
