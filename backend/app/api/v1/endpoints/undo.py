"""
Undo API Endpoints.

One-step timed undo of the most recent action on a record.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.db.session import get_db
from backend.app.core.dependencies import get_event_bus
from backend.app.domain.invoices.invoice_undo import InvoiceUndo
from backend.app.schemas.invoice import InvoiceResponse
from backend.app.schemas.undo import (
    UndoAvailableResponse, UndoEntryResponse, UndoExecuteResponse, UndoRecentResponse, UndoRequest,
)
from backend.app.services import undo_log
from backend.app.services.event_bus import EventBus, EventType

router = APIRouter(prefix="/undo", tags=["Undo"])


@router.get("/available/{entity_type}/{entity_id}", response_model=UndoAvailableResponse)
async def undo_available(entity_type: str, entity_id: str, db: AsyncSession = Depends(get_db)):
    """Whether the record has a replayable step, and for how much longer."""
    entry = await undo_log.get_available_undo(db, entity_type, entity_id)
    if entry is None:
        return UndoAvailableResponse(available=False)

    return UndoAvailableResponse(
        available=True,
        undo_entry=UndoEntryResponse.model_validate(entry),
        action_label=undo_log.action_label(entry.action),
        remaining_seconds=undo_log.remaining_seconds(entry),
    )


@router.post("/{entity_type}/{entity_id}", response_model=UndoExecuteResponse)
async def execute_undo(
    entity_type: str,
    entity_id: str,
    body: UndoRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """
    Undo the most recent action on a record.

    Fails with UNDO_NOT_FOUND, UNDO_EXPIRED or UNDO_STALE.
    """
    entry, invoice = await InvoiceUndo.execute(db, entity_type, entity_id, body.performed_by)
    await db.commit()

    invoice_payload = InvoiceResponse.model_validate(invoice)
    bus.publish(EventType.UNDO_EXECUTED, {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "undone_action": entry.action,
        "performed_by": body.performed_by,
    })
    bus.publish(EventType.INVOICE_UPDATE, {
        "action": "undone",
        "invoice": invoice_payload,
        "performed_by": body.performed_by,
    })

    return UndoExecuteResponse(
        undone_action=entry.action,
        restored_state=entry.previous_state,
        invoice=invoice_payload,
    )


@router.get("/recent/{performed_by}", response_model=UndoRecentResponse)
async def recent_undo(
    performed_by: str,
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db)
):
    """An actor's still-replayable actions, newest first."""
    entries = await undo_log.list_recent_for_actor(db, performed_by, limit=limit)
    return UndoRecentResponse(
        entries=[UndoEntryResponse.model_validate(entry) for entry in entries],
        total=len(entries),
    )
