"""
Failure Injection Tests.

Validates resilience against component failures: the notification relay
and the database.
"""

import pytest
from sqlalchemy.exc import OperationalError

from backend.app.core import redis_client as redis_module
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from backend.app.domain.invoices.invoice_service import InvoiceService
from backend.app.services.event_bus import EventBus, EventType


@pytest.mark.asyncio
async def test_circuit_breaker_activates():
    """Test that circuit breaker opens after threshold failures."""
    cb = CircuitBreaker(failure_threshold=2, reset_timeout=1)

    async def failing_func():
        raise ValueError("Boom")

    for _ in range(2):
        with pytest.raises(ValueError):
            await cb.call(failing_func)

    # Threshold reached
    with pytest.raises(CircuitOpenError):
        await cb.call(failing_func)
    assert cb.state == "OPEN"


@pytest.mark.asyncio
async def test_circuit_breaker_half_open_recovers():
    cb = CircuitBreaker(failure_threshold=1, reset_timeout=30, name="relay")

    async def failing_func():
        raise ConnectionError("down")

    async def healthy_func():
        return "ok"

    with pytest.raises(ConnectionError):
        await cb.call(failing_func)
    assert cb.state == "OPEN"

    # After the reset timeout one trial call is let through
    cb.last_failure_time -= 31
    assert await cb.call(healthy_func) == "ok"
    assert cb.state == "CLOSED"
    assert cb.failures == 0


@pytest.mark.asyncio
async def test_relay_outage_does_not_fail_publishers(mock_redis):
    """Publishing while redis is down still reaches this process's clients."""
    mock_redis.fail = True
    bus = EventBus(backend="redis", redis_client=mock_redis)
    sub = bus.subscribe()

    envelope = bus.publish(EventType.INVOICE_UPDATE, {"invoice_id": 1})
    for task in list(bus._pending):
        await task

    assert envelope is not None
    assert sub.queue.get_nowait()["data"] == {"invoice_id": 1}


@pytest.mark.asyncio
async def test_ping_redis_reports_outage(mocker):
    mocker.patch.object(redis_module.redis_client, "ping", side_effect=ConnectionError("refused"))

    assert await redis_module.ping_redis() is False


@pytest.mark.asyncio
async def test_database_failure_envelope(client, mocker):
    """Storage failures surface as DATABASE_ERROR and are not retried."""
    failing_get = mocker.patch.object(
        InvoiceService, "get", side_effect=OperationalError("SELECT", {}, Exception("disk I/O error"))
    )

    response = await client.get("/v1/invoices/1")

    assert response.status_code == 500
    assert response.json()["error_code"] == "DATABASE_ERROR"
    assert failing_get.await_count == 1
