"""
Shared FastAPI dependencies.
"""

from fastapi import Request
from backend.app.services.event_bus import EventBus


async def get_event_bus(request: Request) -> EventBus:
    """
    The application's change-notification registry.

    Created in the lifespan and kept on ``app.state``; tests override this
    dependency with their own bus.
    """
    return request.app.state.event_bus
