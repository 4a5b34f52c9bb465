"""
Realtime API Endpoints.

Server-Sent Events stream of change notifications for browser clients.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from backend.app.core.dependencies import get_event_bus
from backend.app.services.event_bus import EventBus, stream_events

router = APIRouter(prefix="/realtime", tags=["Realtime"])


@router.get("/events")
async def events(request: Request, bus: EventBus = Depends(get_event_bus)):
    """
    SSE stream: a ``connected`` event, then change events, with a ``ping``
    heartbeat while idle.
    """
    return StreamingResponse(
        stream_events(bus, request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/stats")
async def stats(bus: EventBus = Depends(get_event_bus)):
    return bus.stats()
