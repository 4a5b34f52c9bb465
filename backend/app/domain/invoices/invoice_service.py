"""
Invoice Service (Domain Logic).

Intake, coding-field edits and soft delete. Status changes go through the
state machine; allocation changes through the ledger.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.core.exceptions import ValidationFailedError
from backend.app.models.invoice import Invoice
from backend.app.models.invoice_enums import InvoiceStatus, ReviewFlag, PRE_APPROVAL_STATUSES
from backend.app.domain.invoices.allocation_ledger import AllocationLedger
from backend.app.domain.invoices.records import (
    money, get_invoice, get_allocations, check_expected_version, touch, capture_state,
)
from backend.app.services.activity import log_activity, ActivityAction
from backend.app.services.entity_locking import ensure_writable
from backend.app.services.undo_log import record_undo

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("invoice_number", "invoice_date", "due_date", "notes", "job_id", "vendor_id", "po_id", "amount")

# Deleting these would orphan billed money
UNDELETABLE_STATUSES = frozenset({InvoiceStatus.IN_DRAW, InvoiceStatus.PAID, InvoiceStatus.SPLIT})


class InvoiceService:

    @staticmethod
    async def create(db: AsyncSession, data: Dict[str, Any], performed_by: str) -> Invoice:
        """Intake a new invoice in ``needs_review``."""
        if data.get("amount") is None:
            raise ValidationFailedError("Amount is required", {"field": "amount"})

        invoice = Invoice(
            invoice_number=data.get("invoice_number"),
            invoice_date=data.get("invoice_date"),
            due_date=data.get("due_date"),
            notes=data.get("notes"),
            job_id=data.get("job_id"),
            vendor_id=data.get("vendor_id"),
            po_id=data.get("po_id"),
            amount=money(data["amount"]),
            status=InvoiceStatus.NEEDS_REVIEW,
            review_flags=[] if data.get("job_id") else [ReviewFlag.NO_JOB],
        )
        db.add(invoice)
        await db.flush()

        await log_activity(
            db, "invoice", invoice.id, ActivityAction.INVOICE_CREATED, performed_by,
            {"amount": str(invoice.amount), "invoice_number": invoice.invoice_number}
        )
        return invoice

    @staticmethod
    async def get(db: AsyncSession, invoice_id: int) -> Invoice:
        return await get_invoice(db, invoice_id)

    @staticmethod
    async def update(
        db: AsyncSession,
        invoice_id: int,
        changes: Dict[str, Any],
        performed_by: str,
        expected_version: Optional[int] = None
    ) -> Invoice:
        """
        Edit coding fields. Amount may only change before approval, and
        never below what is already allocated.
        """
        invoice = await get_invoice(db, invoice_id)
        await ensure_writable(db, "invoice", invoice.id, performed_by)
        check_expected_version(invoice, expected_version)

        unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationFailedError("Fields cannot be edited", {"fields": unknown})
        if invoice.status == InvoiceStatus.SPLIT:
            raise ValidationFailedError("A split parent cannot be edited; unsplit it first", {"invoice_id": invoice.id})

        changed = {
            name: value for name, value in changes.items()
            if (money(value) if name == "amount" and value is not None else value) != getattr(invoice, name)
        }
        if not changed:
            return invoice

        previous_state = await capture_state(db, invoice)

        if "amount" in changed:
            if changed["amount"] is None:
                raise ValidationFailedError("Amount is required", {"field": "amount"})
            if invoice.status not in PRE_APPROVAL_STATUSES:
                raise ValidationFailedError(
                    f"Amount cannot change while the invoice is {invoice.status.value}", {"field": "amount"}
                )
            if invoice.is_split_child:
                raise ValidationFailedError("Split child amounts are fixed by the split", {"field": "amount"})
            invoice.amount = money(changed["amount"])
            current = [a.to_snapshot() for a in await get_allocations(db, invoice.id)]
            # Existing allocations must still fit the new amount
            await AllocationLedger.validate(db, invoice, current)

        for name, value in changed.items():
            if name != "amount":
                setattr(invoice, name, value)

        if "job_id" in changed:
            if invoice.job_id is None:
                invoice.add_flags(ReviewFlag.NO_JOB)
            else:
                invoice.remove_flags(ReviewFlag.NO_JOB)

        touch(invoice)
        await db.flush()

        await log_activity(
            db, "invoice", invoice.id, ActivityAction.INVOICE_UPDATED, performed_by,
            {"fields": sorted(changed)}
        )
        await record_undo(
            db, "invoice", invoice.id, "edit", previous_state, performed_by,
            entity_version=invoice.version_id
        )
        return invoice

    @staticmethod
    async def soft_delete(
        db: AsyncSession,
        invoice_id: int,
        performed_by: str,
        expected_version: Optional[int] = None
    ) -> Invoice:
        """Tombstone an invoice. Undoable within the undo window."""
        invoice = await get_invoice(db, invoice_id)
        await ensure_writable(db, "invoice", invoice.id, performed_by)
        check_expected_version(invoice, expected_version)

        if invoice.status in UNDELETABLE_STATUSES:
            raise ValidationFailedError(
                f"Cannot delete an invoice that is {invoice.status.value}", {"status": invoice.status.value}
            )
        if invoice.is_split_child:
            raise ValidationFailedError(
                "Split children cannot be deleted individually; unsplit the family instead",
                {"parent_invoice_id": invoice.parent_invoice_id}
            )

        previous_state = await capture_state(db, invoice)

        invoice.deleted_at = utcnow()
        touch(invoice)
        await db.flush()

        await log_activity(db, "invoice", invoice.id, ActivityAction.INVOICE_DELETED, performed_by)
        await record_undo(
            db, "invoice", invoice.id, "delete", previous_state, performed_by,
            entity_version=invoice.version_id
        )

        logger.info("Invoice deleted", extra={"invoice_id": invoice.id, "performed_by": performed_by})
        return invoice
