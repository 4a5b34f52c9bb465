"""
Activity logging service for the billing engine.

Writes the activity trail inside the caller's unit of work: entries are
flushed, never committed here, so a rolled-back action leaves no trail.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from backend.app.models.activity_log import ActivityLog


class ActivityAction:
    """Standardized activity action constants."""
    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_UPDATED = "INVOICE_UPDATED"
    INVOICE_DELETED = "INVOICE_DELETED"
    STATUS_CHANGED = "STATUS_CHANGED"
    INVOICE_UNPAID = "INVOICE_UNPAID"
    ALLOCATIONS_UPDATED = "ALLOCATIONS_UPDATED"

    # Split family
    INVOICE_SPLIT = "INVOICE_SPLIT"
    INVOICE_UNSPLIT = "INVOICE_UNSPLIT"
    SPLIT_RECONCILED = "SPLIT_RECONCILED"

    # Draws
    DRAW_CREATED = "DRAW_CREATED"
    DRAW_FUNDED = "DRAW_FUNDED"

    # Maintenance
    UNDO_EXECUTED = "UNDO_EXECUTED"
    LOCK_FORCE_RELEASED = "LOCK_FORCE_RELEASED"


async def log_activity(
    db: AsyncSession,
    entity_type: str,
    entity_id,
    action: str,
    performed_by: str,
    details: Optional[Dict[str, Any]] = None
) -> ActivityLog:
    """
    Append an entry to the activity log.

    Args:
        db: Database session
        entity_type: Kind of record acted upon ("invoice", "draw", ...)
        entity_id: Record identifier (stored as string)
        action: Action performed (use ActivityAction constants)
        performed_by: Actor display name
        details: Additional context as JSON

    Returns:
        Created ActivityLog instance (flushed, not committed)
    """
    entry = ActivityLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        performed_by=performed_by,
        details=details,
    )

    db.add(entry)
    await db.flush()

    return entry


async def get_activity_trail(
    db: AsyncSession,
    entity_type: str,
    entity_id,
    limit: int = 100
) -> list[ActivityLog]:
    """
    Retrieve the activity trail for one record, most recent first.
    """
    query = select(ActivityLog).where(
        ActivityLog.entity_type == entity_type,
        ActivityLog.entity_id == str(entity_id),
    ).order_by(desc(ActivityLog.timestamp), desc(ActivityLog.id)).limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())
