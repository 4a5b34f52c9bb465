"""
Entity Lock API Endpoints.

Edit leases for records open in a browser. Acquire refreshes the caller's
own lease; a lease held by someone else fails with LOCK_HELD.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.db.session import get_db
from backend.app.core.dependencies import get_event_bus
from backend.app.schemas.lock import (
    LockAcquireRequest, LockReleaseRequest, LockForceReleaseRequest,
    LockResponse, LockAcquireResponse, LockReleaseResponse, LockForceReleaseResponse,
    LockStatusResponse, LockListResponse,
)
from backend.app.services import entity_locking
from backend.app.services.event_bus import EventBus, EventType

router = APIRouter(prefix="/locks", tags=["Locks"])


@router.post("/acquire", response_model=LockAcquireResponse)
async def acquire_lock(
    body: LockAcquireRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """
    Acquire or refresh an edit lease.

    Returns 409 LOCK_HELD with the holder and expiry if someone else has it.
    """
    lock, created, refreshed = await entity_locking.acquire_lock(
        db, body.entity_type, body.entity_id, body.locked_by
    )
    await db.commit()

    if created:
        bus.publish(EventType.LOCK_CHANGE, {
            "action": "acquired",
            "entity_type": lock.entity_type,
            "entity_id": lock.entity_id,
            "locked_by": lock.locked_by,
            "expires_at": lock.expires_at,
        })

    return LockAcquireResponse(lock=LockResponse.model_validate(lock), created=created, refreshed=refreshed)


@router.delete("/{lock_id}", response_model=LockReleaseResponse)
async def release_lock(
    lock_id: int,
    body: LockReleaseRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """Release a lease by id. Releasing a missing or foreign lease is a no-op."""
    lock = await entity_locking.release_lock(db, lock_id, body.released_by)
    await db.commit()

    if lock is not None:
        bus.publish(EventType.LOCK_CHANGE, {
            "action": "released",
            "entity_type": lock.entity_type,
            "entity_id": lock.entity_id,
            "released_by": body.released_by,
        })

    return LockReleaseResponse(released=lock is not None)


@router.delete("/entity/{entity_type}/{entity_id}", response_model=LockReleaseResponse)
async def release_entity_lock(
    entity_type: str,
    entity_id: str,
    body: LockReleaseRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """Release the caller's lease on an entity."""
    lock = await entity_locking.release_entity_lock(db, entity_type, entity_id, body.released_by)
    await db.commit()

    if lock is not None:
        bus.publish(EventType.LOCK_CHANGE, {
            "action": "released",
            "entity_type": entity_type,
            "entity_id": entity_id,
            "released_by": body.released_by,
        })

    return LockReleaseResponse(released=lock is not None)


@router.post("/force-release", response_model=LockForceReleaseResponse)
async def force_release_lock(
    body: LockForceReleaseRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """Remove a lease regardless of holder (admin)."""
    lock = await entity_locking.force_release_lock(db, body.entity_type, body.entity_id, body.released_by)
    await db.commit()

    if lock is not None:
        bus.publish(EventType.LOCK_CHANGE, {
            "action": "force_released",
            "entity_type": body.entity_type,
            "entity_id": body.entity_id,
            "previous_holder": lock.locked_by,
            "released_by": body.released_by,
        })

    return LockForceReleaseResponse(previous_holder=lock.locked_by if lock else None)


@router.get("", response_model=LockListResponse)
async def list_locks(db: AsyncSession = Depends(get_db)):
    """List active (unexpired) leases."""
    locks = await entity_locking.list_active_locks(db)
    return LockListResponse(locks=[LockResponse.model_validate(lock) for lock in locks], total=len(locks))


@router.post("/cleanup")
async def cleanup_locks(db: AsyncSession = Depends(get_db)):
    """Delete expired leases."""
    removed = await entity_locking.cleanup_expired_locks(db)
    await db.commit()
    return {"success": True, "removed": removed}


@router.get("/check/{entity_type}/{entity_id}", response_model=LockStatusResponse)
async def check_lock(entity_type: str, entity_id: str, db: AsyncSession = Depends(get_db)):
    """Report who holds the lease on an entity, if anyone."""
    return LockStatusResponse(**await entity_locking.check_lock(db, entity_type, entity_id))
