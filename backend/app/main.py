"""
FastAPI Application Entry Point.

This is the main application file for the Construction Billing Backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from backend.app.core.config import settings
from backend.app.api.v1.router import router as api_v1_router
from backend.app.db.session import engine, Base
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    stale_data_exception_handler,
    database_exception_handler,
    generic_exception_handler
)
from backend.app.core.observability import ObservabilityMiddleware, configure_logging
from backend.app.core.redis_client import redis_client
from backend.app.services.event_bus import EventBus

# Import models to ensure they are registered with Base
from backend.app.models.cost_code import CostCode
from backend.app.models.draw import Draw, DrawInvoice  # before invoices for FK
from backend.app.models.invoice import Invoice
from backend.app.models.allocation import InvoiceAllocation
from backend.app.models.entity_lock import EntityLock
from backend.app.models.undo_entry import UndoEntry
from backend.app.models.activity_log import ActivityLog


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Configures logging and creates database tables on startup.
    2. Starts the change-notification bus and stops it on shutdown.
    """
    configure_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    bus = EventBus.from_settings(redis_client=redis_client if settings.realtime_backend == "redis" else None)
    await bus.start()
    app.state.event_bus = bus
    yield
    await bus.stop()
    await engine.dispose()

# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Invoice lifecycle engine for construction project billing",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StaleDataError, stale_data_exception_handler)
app.add_exception_handler(SQLAlchemyError, database_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to Construction Billing Backend API",
        "docs": "/docs",
        "health": "/health",
    }
