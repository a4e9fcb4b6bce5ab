"""
Payment Event Bus

Publishes payment.* events to in-process subscribers (booking and
notification collaborators) and to Server-Sent Events listeners.

Delivery is at-least-once: the store lists on each transaction the events it
owes, and only removes one after publish() returns. A subscriber that raises
leaves the event owed, so the expiration sweeper publishes it again.
Subscribers must therefore be idempotent on (transactionId, event type).
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List

from ..exceptions import EventDeliveryError
from ..models.transactions import PaymentEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[PaymentEvent], Awaitable[None]]


class EventBus:
    """
    Fan-out of payment events.

    Handlers are awaited in subscription order. Stream listeners each get
    their own asyncio.Queue, so a slow browser never blocks the store.
    """

    def __init__(self, stream_queue_size: int = 1000):
        self._handlers: List[EventHandler] = []

        # Stream queues: {listener_id: asyncio.Queue}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._stream_queue_size = stream_queue_size

        self._lock = asyncio.Lock()

    def subscribe(self, handler: EventHandler) -> None:
        """Register an async handler called for every published event."""
        self._handlers.append(handler)
        logger.info(f"Event subscriber registered: {getattr(handler, '__name__', handler)}")

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def publish(self, event: PaymentEvent) -> None:
        """
        Deliver an event to every subscriber and stream listener.

        Raises:
            EventDeliveryError: If any handler raised; the others still ran
        """
        payload = event.to_payload()
        failures = []

        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    f"Event handler failed for {event.event_type} "
                    f"txn={event.transaction_id}: {e}",
                    exc_info=True
                )
                failures.append(str(e))

        self._push_to_streams(event.event_type, payload)

        if failures:
            raise EventDeliveryError(
                f"{len(failures)} subscriber(s) failed for {event.event_type}",
                details={
                    "event_type": event.event_type,
                    "transaction_id": event.transaction_id,
                    "failures": failures,
                }
            )

        logger.info(f"Published {event.event_type} for {event.transaction_id}")

    def _push_to_streams(self, event_type: str, payload: Dict[str, Any]) -> None:
        message = {
            "type": event_type,
            "id": f"{payload['transactionId']}:{event_type}",
            "data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        for listener_id, queue in list(self._queues.items()):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(f"Event stream {listener_id} is full, dropping {event_type}")

    async def open_stream(self, listener_id: str) -> None:
        async with self._lock:
            if listener_id not in self._queues:
                self._queues[listener_id] = asyncio.Queue(maxsize=self._stream_queue_size)
                logger.info(f"Opened event stream: {listener_id}")

    async def close_stream(self, listener_id: str) -> None:
        """
        Close a listener's stream.

        Sends the None sentinel so a pending stream() iteration ends.
        """
        async with self._lock:
            queue = self._queues.pop(listener_id, None)
        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.info(f"Closed event stream: {listener_id}")

    async def stream(self, listener_id: str) -> AsyncIterator[Dict[str, Any]]:
        """
        Async event stream for one listener.

        Yields:
            Event dictionaries ({type, id, data, timestamp}) until the stream is closed
        """
        await self.open_stream(listener_id)
        queue = self._queues[listener_id]

        try:
            while True:
                message = await queue.get()
                if message is None:
                    break
                yield message
        finally:
            await self.close_stream(listener_id)

    def get_active_stream_count(self) -> int:
        return len(self._queues)
