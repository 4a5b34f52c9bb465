"""
Undo log service.

Keeps at most one replayable step per entity. Recording a new action
supersedes the previous entry; an entry is replayable only inside the undo
window and only while the entity is still at the version recorded right
after the action.

Restoring the snapshot is entity specific and lives with the entity's
domain code; this module owns the entry lifecycle.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, desc

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.core.exceptions import UndoNotFoundError, UndoExpiredError
from backend.app.models.undo_entry import UndoEntry
from backend.app.models.invoice_enums import UndoStatus

logger = logging.getLogger(__name__)


ACTION_LABELS = {
    "status_change": "Status change",
    "unpay": "Unpay",
    "allocations_update": "Allocation update",
    "edit": "Edit",
    "delete": "Delete",
    "split": "Split",
    "unsplit": "Unsplit",
}


def action_label(action: str) -> str:
    """Human readable label for an undo action ("status_change:approved" -> "Status change to approved")."""
    base, _, target = action.partition(":")
    label = ACTION_LABELS.get(base, base.replace("_", " ").capitalize())
    return f"{label} to {target}" if target else label


async def record_undo(
    db: AsyncSession,
    entity_type: str,
    entity_id,
    action: str,
    previous_state: Dict[str, Any],
    performed_by: str,
    entity_version: Optional[int]
) -> UndoEntry:
    """
    Record the pre-action snapshot of an entity.

    Must run after the action's final flush so ``entity_version`` is the
    version the action produced.

    Returns:
        Created UndoEntry (flushed, not committed)
    """
    entity_id = str(entity_id)
    now = utcnow()

    # One replayable step per entity: retire the previous one first
    await db.execute(
        update(UndoEntry)
        .where(
            UndoEntry.entity_type == entity_type,
            UndoEntry.entity_id == entity_id,
            UndoEntry.status == UndoStatus.AVAILABLE
        )
        .values(status=UndoStatus.SUPERSEDED)
    )

    entry = UndoEntry(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        previous_state=previous_state,
        performed_by=performed_by,
        status=UndoStatus.AVAILABLE,
        entity_version=entity_version,
        created_at=now,
        expires_at=now + timedelta(seconds=settings.undo_window_seconds)
    )
    db.add(entry)
    await db.flush()

    return entry


async def _latest_available(db: AsyncSession, entity_type: str, entity_id: str) -> Optional[UndoEntry]:
    result = await db.execute(
        select(UndoEntry)
        .where(
            UndoEntry.entity_type == entity_type,
            UndoEntry.entity_id == entity_id,
            UndoEntry.status == UndoStatus.AVAILABLE
        )
        .order_by(desc(UndoEntry.created_at), desc(UndoEntry.id))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_available_undo(db: AsyncSession, entity_type: str, entity_id) -> Optional[UndoEntry]:
    """The entity's replayable entry, or None when missing or expired."""
    entry = await _latest_available(db, entity_type, str(entity_id))
    if entry is None or entry.expires_at <= utcnow():
        return None
    return entry


async def get_replayable_entry(db: AsyncSession, entity_type: str, entity_id) -> UndoEntry:
    """
    Fetch the entry an undo would replay.

    Raises:
        UndoNotFoundError: No available entry (never recorded, consumed or superseded)
        UndoExpiredError: The undo window has passed
    """
    entry = await _latest_available(db, entity_type, str(entity_id))
    if entry is None:
        raise UndoNotFoundError(f"No undo available for this {entity_type}")
    if entry.expires_at <= utcnow():
        raise UndoExpiredError()
    return entry


async def consume_undo(db: AsyncSession, entry: UndoEntry, performed_by: str) -> UndoEntry:
    entry.status = UndoStatus.CONSUMED
    entry.consumed_at = utcnow()
    entry.consumed_by = performed_by
    await db.flush()

    logger.info(
        "Undo executed",
        extra={"entity_type": entry.entity_type, "entity_id": entry.entity_id, "action": entry.action, "performed_by": performed_by}
    )
    return entry


def remaining_seconds(entry: UndoEntry) -> int:
    return max(0, int((entry.expires_at - utcnow()).total_seconds()))


async def list_recent_for_actor(db: AsyncSession, performed_by: str, limit: int = 20) -> list[UndoEntry]:
    """An actor's still-replayable entries, newest first."""
    result = await db.execute(
        select(UndoEntry)
        .where(
            UndoEntry.performed_by == performed_by,
            UndoEntry.status == UndoStatus.AVAILABLE,
            UndoEntry.expires_at > utcnow()
        )
        .order_by(desc(UndoEntry.created_at), desc(UndoEntry.id))
        .limit(limit)
    )
    return list(result.scalars().all())
