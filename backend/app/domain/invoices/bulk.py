"""
Bulk lifecycle operations.

Approve, deny or place many invoices in a draw in one request. Each invoice
goes through the regular state machine transition inside its own savepoint,
so a failing invoice is rolled back and reported while the rest go through.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import AppException, ValidationFailedError
from backend.app.models.invoice_enums import InvoiceStatus, DrawStatus
from backend.app.domain.invoices.records import get_draw
from backend.app.domain.invoices.state_machine import InvoiceStateMachine, parse_status

logger = logging.getLogger(__name__)


class BulkInvoiceService:

    @staticmethod
    async def bulk_transition(
        db: AsyncSession,
        invoice_ids: Iterable[int],
        new_status,
        performed_by: str,
        note: Optional[str] = None,
        reason: Optional[str] = None,
        draw_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Move every listed invoice to ``new_status``.

        Args:
            db: Database session (caller commits)
            invoice_ids: Invoices to move; duplicates are processed once
            new_status: Target status
            performed_by: Actor display name
            note: Approval note passed to each transition
            reason: Denial reason passed to each transition
            draw_id: Target draw for ``in_draw``

        Returns:
            ``{status, success, failed, invoices}`` where ``success`` lists the
            moved ids, ``invoices`` the moved invoices, and each ``failed``
            entry holds the id with the error code and message
        """
        target = parse_status(new_status)
        ids = list(dict.fromkeys(invoice_ids))
        if not ids:
            raise ValidationFailedError("invoice_ids must not be empty", {"field": "invoice_ids"})

        success: List[int] = []
        invoices = []
        failed: List[Dict[str, Any]] = []

        for invoice_id in ids:
            try:
                async with db.begin_nested():
                    invoice = await InvoiceStateMachine.transition(
                        db, invoice_id, target, performed_by, note=note, reason=reason, draw_id=draw_id
                    )
            except AppException as exc:
                failed.append({"id": invoice_id, "error_code": exc.error_code, "error": exc.message})
                continue

            success.append(invoice_id)
            invoices.append(invoice)

        logger.info(
            "Bulk transition",
            extra={"to": target.value, "succeeded": len(success), "failed": len(failed), "performed_by": performed_by}
        )
        return {"status": target, "success": success, "failed": failed, "invoices": invoices}

    @staticmethod
    async def approve(
        db: AsyncSession,
        invoice_ids: Iterable[int],
        performed_by: str,
        note: Optional[str] = None
    ) -> Dict[str, Any]:
        return await BulkInvoiceService.bulk_transition(
            db, invoice_ids, InvoiceStatus.APPROVED, performed_by, note=note
        )

    @staticmethod
    async def deny(db: AsyncSession, invoice_ids: Iterable[int], reason: str, performed_by: str) -> Dict[str, Any]:
        """Deny a batch. One reason applies to every invoice and is required."""
        if not (reason or "").strip():
            raise ValidationFailedError("A denial reason is required", {"field": "reason"})
        return await BulkInvoiceService.bulk_transition(
            db, invoice_ids, InvoiceStatus.DENIED, performed_by, reason=reason.strip()
        )

    @staticmethod
    async def add_to_draw(
        db: AsyncSession,
        invoice_ids: Iterable[int],
        draw_id: int,
        performed_by: str
    ) -> Dict[str, Any]:
        """Place approved invoices in a draft draw. The draw is checked once for the whole batch."""
        draw = await get_draw(db, draw_id)
        if draw.status != DrawStatus.DRAFT:
            raise ValidationFailedError(f"Cannot add invoices to a {draw.status.value} draw", {"draw_id": draw.id})

        return await BulkInvoiceService.bulk_transition(
            db, invoice_ids, InvoiceStatus.IN_DRAW, performed_by, draw_id=draw.id
        )
