"""
Invoice undo (Domain Logic).

Replays the single pending undo entry of an invoice: restores the snapshot
fields, the allocation set and draw lines (delete then insert), and
reverses family tombstones for split/unsplit. Undo never records a new
undo entry.
"""

import logging
from typing import Any, Dict, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import delete

from backend.app.core.clock import utcnow
from backend.app.core.exceptions import UndoStaleError, ValidationFailedError
from backend.app.models.allocation import InvoiceAllocation
from backend.app.models.draw import DrawInvoice
from backend.app.models.invoice import Invoice
from backend.app.models.undo_entry import UndoEntry
from backend.app.domain.invoices.records import get_invoice, clear_allocations, touch
from backend.app.domain.invoices.state_machine import InvoiceStateMachine
from backend.app.services.activity import log_activity, ActivityAction
from backend.app.services.entity_locking import ensure_writable
from backend.app.services.undo_log import get_replayable_entry, consume_undo

logger = logging.getLogger(__name__)

UNDOABLE_ENTITY_TYPES = ("invoice",)


class InvoiceUndo:

    @staticmethod
    async def execute(
        db: AsyncSession,
        entity_type: str,
        entity_id,
        performed_by: str
    ) -> Tuple[UndoEntry, Invoice]:
        """
        Undo the most recent recorded action on an invoice.

        Raises:
            UndoNotFoundError: Nothing to undo
            UndoExpiredError: Undo window passed
            UndoStaleError: The invoice (or a family member) changed since
            LockHeldError: Another user is editing the invoice
        """
        if entity_type not in UNDOABLE_ENTITY_TYPES:
            raise ValidationFailedError(f"Unknown entity type: {entity_type}", {"entity_type": entity_type})

        entry = await get_replayable_entry(db, entity_type, entity_id)
        state: Dict[str, Any] = entry.previous_state

        invoice = await get_invoice(db, int(entry.entity_id), include_deleted=True)
        await ensure_writable(db, entity_type, invoice.id, performed_by)
        if entry.entity_version is not None and invoice.version_id != entry.entity_version:
            raise UndoStaleError(entity_type, entry.entity_id, entry.entity_version, invoice.version_id)

        family = []
        for member in state.get("children", []):
            child = await get_invoice(db, member["id"], include_deleted=True)
            if child.version_id != member.get("version"):
                raise UndoStaleError(entity_type, entry.entity_id, member.get("version"), child.version_id)
            await ensure_writable(db, entity_type, child.id, performed_by)
            family.append((child, member))

        invoice.apply_snapshot(state["invoice"])

        if "allocations" in state:
            await clear_allocations(db, invoice.id)
            db.add_all([InvoiceAllocation.from_snapshot(invoice.id, a) for a in state["allocations"]])

        if "draw_lines" in state:
            await db.execute(delete(DrawInvoice).where(DrawInvoice.invoice_id == invoice.id))
            db.add_all([DrawInvoice.from_snapshot(invoice.id, line) for line in state["draw_lines"]])

        now = utcnow()
        for child, member in family:
            if "state" in member:
                child.apply_snapshot(member["state"])
            else:
                # Created by the undone action
                child.deleted_at = now
            touch(child)

        touch(invoice)
        await db.flush()

        await consume_undo(db, entry, performed_by)
        await log_activity(
            db, entity_type, invoice.id, ActivityAction.UNDO_EXECUTED, performed_by,
            {"undone_action": entry.action, "original_performer": entry.performed_by}
        )

        if invoice.is_split_child and invoice.deleted_at is None:
            await InvoiceStateMachine.reconcile_split(db, invoice.parent_invoice_id, performed_by)

        return entry, invoice
