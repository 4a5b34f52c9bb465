"""
Invoice State Machine (Domain Logic).

Owns the status transition table and the guards and side effects of each
edge. Every transition runs as one unit of work:

1. Lock gate and optional version check
2. Table lookup (anything not listed is TRANSITION_NOT_ALLOWED)
3. Edge guard (validated before the first write)
4. Edge effects, status change, version bump
5. Activity entry and undo snapshot

``paid -> in_draw`` is not in the generic table; only ``unpay`` takes it.
``split`` is entered and left only by the split manager.
"""

import logging
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.core.exceptions import (
    AllocationInvalidError,
    ChangeOrderLinkRequiredError,
    TransitionNotAllowedError,
    ValidationFailedError,
)
from backend.app.models.draw import DrawInvoice
from backend.app.models.invoice import Invoice
from backend.app.models.invoice_enums import InvoiceStatus, DrawStatus, ReviewFlag
from backend.app.domain.invoices.allocation_ledger import AllocationLedger
from backend.app.domain.invoices.records import (
    money, epsilon, get_invoice, get_live_children, get_allocations, get_draw, get_draw_line,
    check_expected_version, touch, capture_state,
)
from backend.app.services.activity import log_activity, ActivityAction
from backend.app.services.entity_locking import ensure_writable
from backend.app.services.undo_log import record_undo

logger = logging.getLogger(__name__)

S = InvoiceStatus

TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    S.NEEDS_REVIEW: frozenset({S.READY_FOR_APPROVAL, S.DENIED}),
    S.READY_FOR_APPROVAL: frozenset({S.APPROVED, S.DENIED, S.NEEDS_REVIEW}),
    S.APPROVED: frozenset({S.IN_DRAW, S.READY_FOR_APPROVAL}),
    S.IN_DRAW: frozenset({S.PAID, S.APPROVED}),
    S.DENIED: frozenset({S.NEEDS_REVIEW}),
    S.PAID: frozenset(),
    S.SPLIT: frozenset(),
}

# Reachable only through InvoiceStateMachine.unpay
UNPAY_EDGE = (S.PAID, S.IN_DRAW)

SETTLED_STATUSES = frozenset({S.PAID, S.DENIED})


def allowed_transitions(status: InvoiceStatus) -> List[str]:
    return sorted(target.value for target in TRANSITIONS[status])


def can_transition(from_status, to_status) -> bool:
    return InvoiceStatus.normalize(to_status) in TRANSITIONS[InvoiceStatus.normalize(from_status)]


def parse_status(value) -> InvoiceStatus:
    try:
        return InvoiceStatus.normalize(value)
    except ValueError:
        raise ValidationFailedError(f"Unknown status '{value}'", {"field": "new_status", "value": str(value)})


class InvoiceStateMachine:

    @staticmethod
    async def transition(
        db: AsyncSession,
        invoice_id: int,
        new_status,
        performed_by: str,
        note: Optional[str] = None,
        reason: Optional[str] = None,
        draw_id: Optional[int] = None,
        expected_version: Optional[int] = None
    ) -> Invoice:
        """
        Move an invoice along one edge of the transition table.

        Args:
            db: Database session (caller commits)
            invoice_id: Invoice to move
            new_status: Target status (legacy aliases accepted)
            performed_by: Actor display name
            note: Approval note (required for under-allocated approval)
            reason: Denial reason
            draw_id: Target draw for ``approved -> in_draw``
            expected_version: Optional optimistic-concurrency check

        Returns:
            The updated invoice
        """
        target = parse_status(new_status)
        invoice = await get_invoice(db, invoice_id)
        await ensure_writable(db, "invoice", invoice.id, performed_by)
        check_expected_version(invoice, expected_version)

        current = invoice.status
        if target not in TRANSITIONS[current]:
            raise TransitionNotAllowedError(current.value, target.value, allowed_transitions(current))

        previous_state = await capture_state(db, invoice)
        now = utcnow()

        if target == S.READY_FOR_APPROVAL and current == S.NEEDS_REVIEW:
            missing = [name for name in ("job_id", "vendor_id") if getattr(invoice, name) is None]
            if missing:
                raise ValidationFailedError(
                    "Job and vendor must be assigned before submitting for approval", {"missing": missing}
                )

        elif target == S.READY_FOR_APPROVAL and current == S.APPROVED:
            invoice.approved_at = None
            invoice.approved_by = None

        elif target == S.APPROVED and current == S.READY_FOR_APPROVAL:
            await InvoiceStateMachine._approve(db, invoice, performed_by, note, now)

        elif target == S.APPROVED and current == S.IN_DRAW:
            violations = await AllocationLedger.change_order_violations(db, invoice.id)
            if violations:
                raise ChangeOrderLinkRequiredError(violations)
            await InvoiceStateMachine._remove_from_draw(db, invoice)

        elif target == S.IN_DRAW:
            await InvoiceStateMachine._add_to_draw(db, invoice, draw_id)

        elif target == S.PAID:
            line = await InvoiceStateMachine._current_line(db, invoice)
            line.paid = True
            invoice.paid_amount = money(invoice.paid_amount) + money(line.billed_amount)

        elif target == S.DENIED:
            invoice.denied_at = now
            invoice.denied_by = performed_by
            invoice.denial_reason = reason

        elif target == S.NEEDS_REVIEW and current == S.DENIED:
            invoice.denied_at = None
            invoice.denied_by = None
            invoice.denial_reason = None

        invoice.status = target
        touch(invoice)
        await db.flush()

        await log_activity(
            db, "invoice", invoice.id, ActivityAction.STATUS_CHANGED, performed_by,
            {"from": current.value, "to": target.value, "note": note, "reason": reason, "draw_id": invoice.draw_id}
        )
        await record_undo(
            db, "invoice", invoice.id, f"status_change:{target.value}", previous_state, performed_by,
            entity_version=invoice.version_id
        )

        if invoice.is_split_child:
            await InvoiceStateMachine.reconcile_split(db, invoice.parent_invoice_id, performed_by)

        return invoice

    @staticmethod
    async def unpay(
        db: AsyncSession,
        invoice_id: int,
        performed_by: str,
        expected_version: Optional[int] = None
    ) -> Invoice:
        """Reverse a payment: ``paid -> in_draw``, the only way back from paid."""
        invoice = await get_invoice(db, invoice_id)
        await ensure_writable(db, "invoice", invoice.id, performed_by)
        check_expected_version(invoice, expected_version)

        if invoice.status != UNPAY_EDGE[0]:
            raise TransitionNotAllowedError(invoice.status.value, UNPAY_EDGE[1].value, allowed_transitions(invoice.status))

        previous_state = await capture_state(db, invoice)

        line = await InvoiceStateMachine._current_line(db, invoice)
        line.paid = False
        invoice.paid_amount = money(invoice.paid_amount) - money(line.billed_amount)
        invoice.status = UNPAY_EDGE[1]
        touch(invoice)
        await db.flush()

        await log_activity(
            db, "invoice", invoice.id, ActivityAction.INVOICE_UNPAID, performed_by,
            {"draw_id": invoice.draw_id, "amount": str(line.billed_amount)}
        )
        await record_undo(
            db, "invoice", invoice.id, "unpay", previous_state, performed_by,
            entity_version=invoice.version_id
        )

        if invoice.is_split_child:
            await InvoiceStateMachine.reconcile_split(db, invoice.parent_invoice_id, performed_by)

        return invoice

    @staticmethod
    async def reconcile_split(db: AsyncSession, parent_id: int, performed_by: str) -> bool:
        """
        Flag a split parent once every live child is paid or denied.

        Clears the flag again if a child moves back. Returns whether the
        family is settled.
        """
        parent = await get_invoice(db, parent_id)
        if not parent.is_split_parent:
            return False

        children = await get_live_children(db, parent.id)
        settled = bool(children) and all(child.status in SETTLED_STATUSES for child in children)

        if settled and not parent.has_flag(ReviewFlag.SPLIT_RECONCILED):
            parent.add_flags(ReviewFlag.SPLIT_RECONCILED)
            touch(parent)
            await db.flush()
            await log_activity(
                db, "invoice", parent.id, ActivityAction.SPLIT_RECONCILED, performed_by,
                {"children": [child.id for child in children]}
            )
            logger.info("Split family reconciled", extra={"parent_id": parent.id})
        elif not settled and parent.has_flag(ReviewFlag.SPLIT_RECONCILED):
            parent.remove_flags(ReviewFlag.SPLIT_RECONCILED)
            touch(parent)
            await db.flush()

        return settled

    # Edge helpers

    @staticmethod
    async def _approve(db: AsyncSession, invoice: Invoice, performed_by: str, note: Optional[str], now):
        allocations = await get_allocations(db, invoice.id)
        if not allocations:
            raise AllocationInvalidError(
                "allocations_required", "Invoice must be allocated to at least one cost code before approval"
            )

        total = money(sum((money(a.amount) for a in allocations), Decimal("0.00")))
        unbilled = abs(money(invoice.amount) - money(invoice.billed_amount))
        if abs(total) > unbilled + epsilon():
            raise AllocationInvalidError(
                "over_allocated",
                f"Allocations ({total}) exceed the unbilled invoice amount ({unbilled})",
                {"total": str(total), "available": str(unbilled)}
            )

        violations = await AllocationLedger.change_order_violations(db, invoice.id)
        if violations:
            raise ChangeOrderLinkRequiredError(violations)

        note = (note or "").strip()
        if unbilled - abs(total) > epsilon():
            if not note:
                raise ValidationFailedError(
                    "A note is required to approve a partially allocated invoice",
                    {"field": "note", "remaining": str(unbilled - abs(total))}
                )
            invoice.add_flags(ReviewFlag.PARTIAL_APPROVAL)
        else:
            invoice.remove_flags(ReviewFlag.PARTIAL_APPROVAL)

        if note:
            invoice.approval_note = note
        invoice.approved_at = now
        invoice.approved_by = performed_by

    @staticmethod
    async def _add_to_draw(db: AsyncSession, invoice: Invoice, draw_id: Optional[int]):
        if draw_id is None:
            raise ValidationFailedError("A draw is required to move an invoice into a draw", {"field": "draw_id"})

        draw = await get_draw(db, draw_id)
        if draw.status != DrawStatus.DRAFT:
            raise ValidationFailedError(f"Cannot add invoices to a {draw.status.value} draw", {"draw_id": draw.id})
        if await get_draw_line(db, draw.id, invoice.id) is not None:
            raise ValidationFailedError("Invoice is already in this draw", {"draw_id": draw.id})

        allocations = await get_allocations(db, invoice.id)
        billed = money(sum((money(a.amount) for a in allocations), Decimal("0.00")))

        db.add(DrawInvoice(
            draw_id=draw.id,
            invoice_id=invoice.id,
            billed_amount=billed,
            allocations=[a.to_snapshot() for a in allocations],
            paid=False,
        ))
        invoice.draw_id = draw.id
        invoice.billed_amount = money(invoice.billed_amount) + billed

    @staticmethod
    async def _remove_from_draw(db: AsyncSession, invoice: Invoice):
        line = await InvoiceStateMachine._current_line(db, invoice)
        draw = await get_draw(db, line.draw_id)
        if draw.status == DrawStatus.FUNDED:
            raise ValidationFailedError("Cannot remove an invoice from a funded draw", {"draw_id": draw.id})

        invoice.billed_amount = money(invoice.billed_amount) - money(line.billed_amount)
        invoice.draw_id = None
        await db.delete(line)

    @staticmethod
    async def _current_line(db: AsyncSession, invoice: Invoice) -> DrawInvoice:
        line = None
        if invoice.draw_id is not None:
            line = await get_draw_line(db, invoice.draw_id, invoice.id)
        if line is None:
            raise ValidationFailedError("Invoice has no line on its draw", {"draw_id": invoice.draw_id})
        return line
