"""
Split/Merge Manager (Domain Logic).

Splits one invoice into child invoices that sum to the original amount and
merges them back. Family conservation holds after every operation: the
live children of a split parent always sum to its ``original_amount``.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.core.exceptions import (
    AlreadySplitError,
    ChildAlreadyProcessedError,
    InvalidStatusForSplitError,
    SplitSumMismatchError,
    ValidationFailedError,
)
from backend.app.models.invoice import Invoice
from backend.app.models.invoice_enums import (
    InvoiceStatus, ReviewFlag, PRE_APPROVAL_STATUSES, PROCESSED_STATUSES,
)
from backend.app.domain.invoices.records import (
    money, epsilon, get_invoice, get_live_children, clear_allocations, touch, capture_state,
)
from backend.app.services.activity import log_activity, ActivityAction
from backend.app.services.entity_locking import ensure_writable
from backend.app.services.undo_log import record_undo

logger = logging.getLogger(__name__)


class SplitManager:

    @staticmethod
    async def split(
        db: AsyncSession,
        invoice_id: int,
        splits: List[Dict[str, Any]],
        performed_by: str
    ) -> Tuple[Invoice, List[Invoice]]:
        """
        Split an invoice into children.

        Flow:
        1. Validate entries, family membership, status and sum
        2. Park the parent in ``split`` (remembering its prior status)
        3. Clear the parent's allocations
        4. Create children ``{number}-{i}`` in ``needs_review``
        5. Record undo (children are tombstoned on undo)

        Args:
            db: Database session (caller commits)
            invoice_id: Invoice to split
            splits: ``{amount, job_id?, notes?}`` dicts, at least two
            performed_by: Actor display name

        Returns:
            (parent, children)
        """
        if not splits or len(splits) < 2:
            raise ValidationFailedError("At least 2 splits required", {"field": "splits"})

        parent = await get_invoice(db, invoice_id)
        await ensure_writable(db, "invoice", parent.id, performed_by)

        if parent.is_split_parent or parent.is_split_child:
            raise AlreadySplitError(parent.id)
        if parent.status not in PRE_APPROVAL_STATUSES:
            raise InvalidStatusForSplitError(parent.id, parent.status.value)

        amounts = [money(entry.get("amount")) for entry in splits]
        for index, amount in enumerate(amounts):
            if amount == 0 or (amount < 0) != parent.is_credit:
                raise ValidationFailedError(
                    "Split amounts must be non-zero and share the invoice's sign",
                    {"index": index, "amount": str(amount)}
                )

        split_total = money(sum(amounts, Decimal("0.00")))
        parent_amount = money(parent.amount)
        if abs(split_total - parent_amount) > epsilon():
            raise SplitSumMismatchError(split_total, parent_amount)

        previous_state = await capture_state(db, parent)

        await clear_allocations(db, parent.id)
        parent.pre_split_status = parent.status
        parent.original_amount = parent_amount
        parent.is_split_parent = True
        parent.status = InvoiceStatus.SPLIT
        touch(parent)

        base_number = parent.invoice_number or "INV"
        children = []
        for index, (entry, amount) in enumerate(zip(splits, amounts), start=1):
            job_id = entry.get("job_id")
            flags = [ReviewFlag.SPLIT_CHILD] if job_id else [ReviewFlag.SPLIT_CHILD, ReviewFlag.NO_JOB]
            child = Invoice(
                parent_invoice_id=parent.id,
                split_index=index,
                invoice_number=f"{base_number}-{index}",
                invoice_date=parent.invoice_date,
                due_date=parent.due_date,
                vendor_id=parent.vendor_id,
                po_id=parent.po_id,
                job_id=job_id,
                amount=amount,
                original_amount=amount,
                status=InvoiceStatus.NEEDS_REVIEW,
                notes=entry.get("notes") or f"Split {index} of {len(splits)} from {base_number}",
                review_flags=flags,
            )
            db.add(child)
            children.append(child)

        await db.flush()

        previous_state["children"] = [{"id": child.id, "version": child.version_id} for child in children]

        for child in children:
            await log_activity(
                db, "invoice", child.id, ActivityAction.INVOICE_CREATED, performed_by,
                {"split_from": parent.id, "split_index": child.split_index, "amount": str(child.amount)}
            )
        await log_activity(
            db, "invoice", parent.id, ActivityAction.INVOICE_SPLIT, performed_by,
            {"child_count": len(children), "child_ids": [child.id for child in children]}
        )
        await record_undo(
            db, "invoice", parent.id, "split", previous_state, performed_by,
            entity_version=parent.version_id
        )

        logger.info("Invoice split", extra={"invoice_id": parent.id, "children": len(children), "performed_by": performed_by})
        return parent, children

    @staticmethod
    async def unsplit(db: AsyncSession, invoice_id: int, performed_by: str) -> Tuple[Invoice, List[int]]:
        """
        Merge a split family back into its parent.

        Children are tombstoned, never hard-deleted. Blocked while any live
        child is approved, in a draw or paid.

        Returns:
            (parent, ids of the removed children)
        """
        parent = await get_invoice(db, invoice_id)
        await ensure_writable(db, "invoice", parent.id, performed_by)

        if not parent.is_split_parent:
            raise ValidationFailedError("Invoice is not a split parent", {"invoice_id": parent.id})

        children = await get_live_children(db, parent.id)
        for child in children:
            await ensure_writable(db, "invoice", child.id, performed_by)
            if child.status in PROCESSED_STATUSES:
                raise ChildAlreadyProcessedError(child.id, child.invoice_number, child.status.value)

        previous_state = await capture_state(db, parent)
        child_states = {child.id: child.to_snapshot() for child in children}

        now = utcnow()
        for child in children:
            child.deleted_at = now
            touch(child)

        parent.amount = money(parent.original_amount)
        parent.status = parent.pre_split_status or InvoiceStatus.NEEDS_REVIEW
        parent.is_split_parent = False
        parent.original_amount = None
        parent.pre_split_status = None
        parent.remove_flags(ReviewFlag.SPLIT_RECONCILED)
        touch(parent)
        await db.flush()

        previous_state["children"] = [
            {"id": child.id, "version": child.version_id, "state": child_states[child.id]}
            for child in children
        ]
        removed = [child.id for child in children]

        await log_activity(
            db, "invoice", parent.id, ActivityAction.INVOICE_UNSPLIT, performed_by,
            {"deleted_child_count": len(removed), "deleted_children": removed}
        )
        await record_undo(
            db, "invoice", parent.id, "unsplit", previous_state, performed_by,
            entity_version=parent.version_id
        )

        logger.info("Invoice unsplit", extra={"invoice_id": parent.id, "children": len(removed), "performed_by": performed_by})
        return parent, removed

    @staticmethod
    async def get_family(db: AsyncSession, invoice_id: int) -> Dict[str, Any]:
        """Resolve the family from either the parent or a child id."""
        invoice = await get_invoice(db, invoice_id)

        if not invoice.is_split_parent and not invoice.is_split_child:
            return {"is_split": False, "parent": None, "children": []}

        root = invoice if invoice.is_split_parent else await get_invoice(db, invoice.parent_invoice_id)
        return {
            "is_split": True,
            "parent": root,
            "children": await get_live_children(db, root.id),
        }
