"""
Entity locking service.

Lease-based edit locks for any record type. Locks never block: a conflicting
acquire fails immediately with LOCK_HELD naming the current holder.
Expired leases count as absent everywhere and are taken over in place.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.core.exceptions import LockHeldError, ValidationFailedError
from backend.app.models.entity_lock import EntityLock
from backend.app.services.activity import log_activity, ActivityAction

logger = logging.getLogger(__name__)


def _lock_ttl() -> timedelta:
    return timedelta(minutes=settings.lock_ttl_minutes)


async def _get_lock_row(db: AsyncSession, entity_type: str, entity_id: str) -> Optional[EntityLock]:
    result = await db.execute(
        select(EntityLock).where(
            EntityLock.entity_type == entity_type,
            EntityLock.entity_id == entity_id
        )
    )
    return result.scalar_one_or_none()


async def acquire_lock(
    db: AsyncSession,
    entity_type: str,
    entity_id,
    locked_by: str
) -> tuple[EntityLock, bool, bool]:
    """
    Acquire or refresh the edit lease on an entity.

    Args:
        db: Database session
        entity_type: Kind of record ("invoice", ...)
        entity_id: Record identifier
        locked_by: Display name of the requesting user

    Returns:
        (lock, created, refreshed)

    Raises:
        LockHeldError: If another user holds an active lease
    """
    if not entity_type or entity_id in (None, "") or not locked_by:
        raise ValidationFailedError("entity_type, entity_id and locked_by are required")

    entity_id = str(entity_id)
    now = utcnow()
    expires_at = now + _lock_ttl()

    lock = await _get_lock_row(db, entity_type, entity_id)

    if lock is not None and lock.is_active(now):
        if lock.locked_by == locked_by:
            lock.expires_at = expires_at
            await db.flush()
            return lock, False, True

        logger.info(
            "Lock conflict",
            extra={"entity_type": entity_type, "entity_id": entity_id, "holder": lock.locked_by, "requested_by": locked_by}
        )
        raise LockHeldError(entity_type, entity_id, lock.locked_by, lock.expires_at)

    if lock is not None:
        # Expired lease, whoever held it, counts as absent
        lock.locked_by = locked_by
        lock.locked_at = now
        lock.expires_at = expires_at
        await db.flush()
        return lock, True, False

    lock = EntityLock(
        entity_type=entity_type,
        entity_id=entity_id,
        locked_by=locked_by,
        locked_at=now,
        expires_at=expires_at
    )
    db.add(lock)

    try:
        await db.flush()  # Will raise IntegrityError if another request won the insert race
    except IntegrityError:
        await db.rollback()
        winner = await _get_lock_row(db, entity_type, entity_id)
        if winner is None:
            raise
        logger.info(
            "Lock race lost",
            extra={"entity_type": entity_type, "entity_id": entity_id, "holder": winner.locked_by, "requested_by": locked_by}
        )
        raise LockHeldError(entity_type, entity_id, winner.locked_by, winner.expires_at)

    return lock, True, False


async def release_lock(db: AsyncSession, lock_id: int, released_by: str) -> Optional[EntityLock]:
    """
    Release a lock by id. Only the holder may release it.

    Returns:
        The released lock, or None when missing or held by someone else
    """
    result = await db.execute(
        select(EntityLock).where(
            EntityLock.id == lock_id,
            EntityLock.locked_by == released_by
        )
    )
    lock = result.scalar_one_or_none()

    if not lock:
        return None

    await db.delete(lock)
    await db.flush()
    return lock


async def release_entity_lock(
    db: AsyncSession,
    entity_type: str,
    entity_id,
    released_by: str
) -> Optional[EntityLock]:
    """Release the holder's lock on an entity. Idempotent."""
    lock = await _get_lock_row(db, entity_type, str(entity_id))

    if not lock or lock.locked_by != released_by:
        return None

    await db.delete(lock)
    await db.flush()
    return lock


async def force_release_lock(
    db: AsyncSession,
    entity_type: str,
    entity_id,
    released_by: str
) -> Optional[EntityLock]:
    """
    Remove any lock on an entity regardless of holder (admin operation).

    Returns:
        The removed lock, or None if the entity was not locked
    """
    entity_id = str(entity_id)
    lock = await _get_lock_row(db, entity_type, entity_id)

    if not lock:
        return None

    await db.delete(lock)
    await log_activity(
        db,
        entity_type=entity_type,
        entity_id=entity_id,
        action=ActivityAction.LOCK_FORCE_RELEASED,
        performed_by=released_by,
        details={"previous_holder": lock.locked_by, "expires_at": lock.expires_at.isoformat()}
    )
    logger.info(
        "Lock force released",
        extra={"entity_type": entity_type, "entity_id": entity_id, "previous_holder": lock.locked_by, "released_by": released_by}
    )
    return lock


async def check_lock(db: AsyncSession, entity_type: str, entity_id) -> dict:
    """
    Report the lock state of an entity. Expired leases report as unlocked.
    """
    now = utcnow()
    lock = await _get_lock_row(db, entity_type, str(entity_id))

    if not lock or not lock.is_active(now):
        return {"locked": False, "holder": None, "expires_at": None, "lock_id": None, "remaining_seconds": 0}

    return {
        "locked": True,
        "holder": lock.locked_by,
        "expires_at": lock.expires_at,
        "lock_id": lock.id,
        "remaining_seconds": int((lock.expires_at - now).total_seconds()),
    }


async def list_active_locks(db: AsyncSession) -> list[EntityLock]:
    result = await db.execute(
        select(EntityLock)
        .where(EntityLock.expires_at > utcnow())
        .order_by(EntityLock.locked_at)
    )
    return list(result.scalars().all())


async def cleanup_expired_locks(db: AsyncSession) -> int:
    """
    Delete every expired lease.

    Returns:
        Number of rows removed
    """
    result = await db.execute(
        delete(EntityLock).where(EntityLock.expires_at <= utcnow())
    )
    await db.flush()
    return result.rowcount or 0


async def ensure_writable(db: AsyncSession, entity_type: str, entity_id, actor: str) -> None:
    """
    Lock gate for mutating operations.

    Passes when the entity is unlocked, the lease has expired, or the actor
    holds it.

    Raises:
        LockHeldError: If another user holds an active lease
    """
    lock = await _get_lock_row(db, entity_type, str(entity_id))

    if lock is None or lock.locked_by == actor or not lock.is_active(utcnow()):
        return

    raise LockHeldError(entity_type, str(entity_id), lock.locked_by, lock.expires_at)
