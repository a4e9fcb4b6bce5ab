"""
Payment Event Stream

Server-Sent Events feed of payment.* events for dashboards and the booking
frontend. Delivery to in-process subscribers does not depend on anyone
listening here.
"""
import json
import logging
import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ..services.event_service import EventBus
from .deps import get_event_bus

logger = logging.getLogger(__name__)

router = APIRouter()


def format_sse_event(event_type: str, data: Dict[str, Any], event_id: str) -> str:
    """
    Format event as Server-Sent Events (SSE) message.

    SSE Format:
        event: {event_type}
        id: {event_id}
        data: {json_data}

    (blank line terminates event)
    """
    lines = [
        f"event: {event_type}",
        f"id: {event_id}",
        f"data: {json.dumps(data, default=str)}",
        ""
    ]
    return "\n".join(lines) + "\n"


@router.get("/stream")
async def stream_events_endpoint(event_bus: EventBus = Depends(get_event_bus)) -> StreamingResponse:
    """
    Subscribe to payment events.

    Example:
        curl -N http://localhost:8000/api/events/stream
    """
    listener_id = f"listener_{uuid.uuid4().hex[:12]}"
    await event_bus.open_stream(listener_id)
    logger.info(f"Event stream opened: {listener_id}")

    async def event_generator():
        try:
            async for event in event_bus.stream(listener_id):
                yield format_sse_event(event["type"], event["data"], event["id"])
        finally:
            await event_bus.close_stream(listener_id)
            logger.info(f"Event stream closed: {listener_id}")

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"
        }
    )
