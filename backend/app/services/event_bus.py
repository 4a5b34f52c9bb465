"""
Change notification fan-out.

A process-scoped registry of connected browser streams. Mutations publish
after commit; publishing never raises and never blocks the request. With the
``redis`` backend every envelope goes through a shared channel so clients of
all worker processes see the same stream.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional, Set

import redis.asyncio as redis
from fastapi.encoders import jsonable_encoder

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)


class EventType:
    """Change event names sent to clients."""
    CONNECTED = "connected"
    PING = "ping"
    INVOICE_UPDATE = "invoice_update"
    INVOICE_SPLIT = "invoice_split"
    INVOICE_UNSPLIT = "invoice_unsplit"
    ALLOCATION_UPDATE = "allocation_update"
    LOCK_CHANGE = "lock_change"
    DRAW_UPDATE = "draw_update"
    UNDO_EXECUTED = "undo_executed"


class Subscription:
    """One connected client: a bounded queue of envelopes."""

    def __init__(self, queue_size: int):
        self.client_id = f"client_{uuid.uuid4().hex[:12]}"
        self.connected_at = utcnow()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False

    def close(self):
        self.closed = True


class EventBus:
    """
    Change notification registry.

    Lifecycle is owned by the application (``start`` on startup, ``stop`` on
    shutdown). Handlers receive it through a dependency.
    """

    def __init__(
        self,
        backend: str = "memory",
        redis_client=None,
        channel: str = "billing:changes",
        queue_size: int = 100,
        breaker: Optional[CircuitBreaker] = None
    ):
        if backend not in ("memory", "redis"):
            raise ValueError(f"Unknown realtime backend: {backend}")
        if backend == "redis" and redis_client is None:
            raise ValueError("The redis realtime backend needs a redis client")

        self.backend = backend
        self.redis = redis_client
        self.channel = channel
        self.queue_size = queue_size
        self.breaker = breaker or CircuitBreaker(failure_threshold=3, reset_timeout=30, name="realtime-relay")

        self._subscribers: Set[Subscription] = set()
        self._pending: Set[asyncio.Task] = set()
        self._listener: Optional[asyncio.Task] = None
        self._pubsub = None
        self.published = 0
        self.dropped = 0

    @classmethod
    def from_settings(cls, redis_client=None) -> "EventBus":
        return cls(
            backend=settings.realtime_backend,
            redis_client=redis_client,
            channel=settings.realtime_channel,
            queue_size=settings.realtime_queue_size,
        )

    async def start(self):
        if self.backend == "redis" and self._listener is None:
            self._pubsub = self.redis.pubsub()
            await self._pubsub.subscribe(self.channel)
            self._listener = asyncio.create_task(self._listen())
        logger.info("Event bus started", extra={"backend": self.backend, "channel": self.channel})

    async def stop(self):
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None
        for task in list(self._pending):
            task.cancel()
        for sub in list(self._subscribers):
            sub.close()
        self._subscribers.clear()
        logger.info("Event bus stopped")

    def subscribe(self) -> Subscription:
        sub = Subscription(self.queue_size)
        self._subscribers.add(sub)
        logger.info("Client connected", extra={"client_id": sub.client_id, "subscribers": len(self._subscribers)})
        return sub

    def unsubscribe(self, sub: Subscription):
        sub.close()
        if sub in self._subscribers:
            self._subscribers.discard(sub)
            logger.info("Client disconnected", extra={"client_id": sub.client_id, "subscribers": len(self._subscribers)})

    def publish(self, event: str, data: Any = None) -> Optional[Dict[str, Any]]:
        """
        Fire-and-forget broadcast of a change event.

        Returns the envelope sent, or None if the payload could not be encoded.
        """
        try:
            envelope = {
                "event": event,
                "data": jsonable_encoder(data if data is not None else {}),
                "timestamp": utcnow().isoformat(),
            }
        except (TypeError, ValueError):
            logger.warning("Dropping unencodable event", extra={"event": event})
            return None

        self.published += 1

        if self.backend == "redis":
            try:
                task = asyncio.get_running_loop().create_task(self._relay(envelope))
            except RuntimeError:
                # No running loop (called from sync code): local clients only
                self._fan_out(envelope)
            else:
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        else:
            self._fan_out(envelope)

        return envelope

    async def _relay(self, envelope: Dict[str, Any]):
        try:
            await self.breaker.call(self.redis.publish, self.channel, json.dumps(envelope))
        except (CircuitOpenError, redis.RedisError, OSError) as exc:
            logger.warning(
                "Realtime relay failed, delivering locally",
                extra={"event": envelope["event"], "error": str(exc), "circuit": self.breaker.state}
            )
            self._fan_out(envelope)

    async def _listen(self):
        while True:
            try:
                async for message in self._pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        envelope = json.loads(message["data"])
                    except (TypeError, ValueError):
                        logger.warning("Ignoring malformed relay message")
                        continue
                    self._fan_out(envelope)
            except (redis.RedisError, OSError) as exc:
                logger.warning("Realtime listener error, retrying", extra={"error": str(exc)})
                await asyncio.sleep(1)

    def _fan_out(self, envelope: Dict[str, Any]):
        for sub in list(self._subscribers):
            try:
                sub.queue.put_nowait(envelope)
            except asyncio.QueueFull:
                # Slow consumer: drop it rather than block publishers
                self.dropped += 1
                self._subscribers.discard(sub)
                sub.close()
                logger.warning("Dropping slow client", extra={"client_id": sub.client_id})

    def stats(self) -> Dict[str, Any]:
        return {
            "backend": self.backend,
            "subscribers": len(self._subscribers),
            "published": self.published,
            "dropped": self.dropped,
            "clients": [
                {
                    "client_id": sub.client_id,
                    "connected_at": sub.connected_at.isoformat(),
                    "pending": sub.queue.qsize(),
                }
                for sub in self._subscribers
            ],
        }


def format_sse(event: str, data: Any) -> str:
    """Encode one Server-Sent Events frame."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def stream_events(bus: EventBus, request=None, heartbeat_seconds: float = None):
    """
    SSE body generator: a ``connected`` frame, then change envelopes,
    with a ``ping`` frame whenever the stream has been idle for the
    heartbeat interval.
    """
    heartbeat = heartbeat_seconds or settings.realtime_heartbeat_seconds
    sub = bus.subscribe()
    try:
        yield format_sse(EventType.CONNECTED, {"client_id": sub.client_id, "timestamp": utcnow().isoformat()})

        while not sub.closed:
            if request is not None and await request.is_disconnected():
                break
            try:
                envelope = await asyncio.wait_for(sub.queue.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield format_sse(EventType.PING, {"timestamp": utcnow().isoformat()})
                continue
            yield format_sse(envelope["event"], envelope)
    finally:
        bus.unsubscribe(sub)
