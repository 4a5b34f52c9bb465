"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import locks, invoices, undo, draws, realtime

router = APIRouter()

# Edit leases
router.include_router(locks.router)

# Invoice lifecycle: intake, transitions, allocations, split families
router.include_router(invoices.router)

# One-step undo
router.include_router(undo.router)

# Payment draws
router.include_router(draws.router)

# Change notifications (SSE)
router.include_router(realtime.router)
