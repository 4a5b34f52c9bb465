"""
Centralized Test Configuration.
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool, Pool

from backend.app.main import app
from backend.app.db.session import get_db, Base
from backend.app.core import clock as clock_module
from backend.app.core.dependencies import get_event_bus
from backend.app.models.cost_code import CostCode
from backend.app.models.invoice import Invoice
from backend.app.models.invoice_enums import InvoiceStatus
from backend.app.services.event_bus import EventBus

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class FrozenClock:
    """Manually advanced clock installed behind backend.app.core.clock.utcnow."""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta):
        self.current = self.current + timedelta(**delta)


class MockRedis:
    """Stand-in for the realtime relay channel."""

    def __init__(self):
        self.published = []
        self.fail = False
        self._closed = False

    async def ping(self):
        return not self._closed

    async def publish(self, channel, message):
        if self.fail or self._closed:
            raise ConnectionError("redis unavailable")
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        self._closed = True


@pytest.fixture(autouse=True)
def frozen_clock():
    clock = FrozenClock(datetime(2026, 1, 15, 12, 0, 0))
    clock_module.set_now(clock.now)
    yield clock
    clock_module.set_now(None)


@pytest.fixture
async def test_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# Shared session for fixture data creation and service-level tests
@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def event_bus():
    bus = EventBus(backend="memory", queue_size=10)
    await bus.start()
    yield bus
    await bus.stop()


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
async def client(session_factory, event_bus):
    """Async client for testing, wired to the test database and bus."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def override_get_event_bus():
        return event_bus

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_bus] = override_get_event_bus

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}


@pytest.fixture
async def cost_codes(db_session):
    """A regular cost code and a change-order cost code."""
    codes = {
        "03100": CostCode(code="03100", name="Concrete"),
        "03100C": CostCode(code="03100C", name="Concrete - Change Order"),
        "16100": CostCode(code="16100", name="Electrical"),
    }
    db_session.add_all(codes.values())
    await db_session.commit()
    return codes


@pytest.fixture
def make_invoice(db_session):
    """Factory for invoices persisted directly (bypassing intake)."""

    async def _make(amount="1000.00", status=InvoiceStatus.NEEDS_REVIEW, **fields):
        fields.setdefault("invoice_number", "INV-100")
        fields.setdefault("job_id", 1)
        fields.setdefault("vendor_id", 7)
        invoice = Invoice(amount=Decimal(amount), status=status, review_flags=[], **fields)
        db_session.add(invoice)
        await db_session.commit()
        return invoice

    return _make
