"""
Draw Service (Domain Logic).

Creates draws and finalizes (funds) them. Funding runs the partial billing
cycle for every invoice still in the draw:

- billed_amount covers the invoice amount -> paid
- otherwise -> needs_review with an empty ledger and the ``partial_billed``
  flag, so the remainder can be billed in a later draw
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from backend.app.core.clock import utcnow
from backend.app.core.exceptions import ValidationFailedError
from backend.app.models.draw import Draw, DrawInvoice
from backend.app.models.invoice_enums import InvoiceStatus, DrawStatus, ReviewFlag
from backend.app.domain.invoices.records import (
    money, epsilon, get_invoice, get_draw, clear_allocations, touch,
)
from backend.app.domain.invoices.state_machine import InvoiceStateMachine
from backend.app.services.activity import log_activity, ActivityAction
from backend.app.services.entity_locking import ensure_writable

logger = logging.getLogger(__name__)


class DrawService:

    @staticmethod
    async def create(
        db: AsyncSession,
        performed_by: str,
        job_id: Optional[int] = None,
        draw_number: Optional[int] = None
    ) -> Draw:
        """Open a draft draw. Numbers run per job when not supplied."""
        if draw_number is None:
            result = await db.execute(
                select(func.max(Draw.draw_number)).where(
                    Draw.job_id.is_(None) if job_id is None else Draw.job_id == job_id
                )
            )
            draw_number = (result.scalar() or 0) + 1

        draw = Draw(draw_number=draw_number, job_id=job_id, status=DrawStatus.DRAFT)
        db.add(draw)
        await db.flush()

        await log_activity(db, "draw", draw.id, ActivityAction.DRAW_CREATED, performed_by, {"draw_number": draw_number})
        return draw

    @staticmethod
    async def get_lines(db: AsyncSession, draw_id: int) -> List[DrawInvoice]:
        result = await db.execute(
            select(DrawInvoice).where(DrawInvoice.draw_id == draw_id).order_by(DrawInvoice.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_with_lines(db: AsyncSession, draw_id: int) -> Tuple[Draw, List[DrawInvoice], Decimal]:
        """Draw, its lines and the computed total."""
        draw = await get_draw(db, draw_id)
        lines = await DrawService.get_lines(db, draw.id)
        total = money(sum((money(line.billed_amount) for line in lines), Decimal("0.00")))
        return draw, lines, total

    @staticmethod
    async def submit(db: AsyncSession, draw_id: int, performed_by: str) -> Draw:
        """Close a draft draw to further changes ahead of funding."""
        draw = await get_draw(db, draw_id)
        if draw.status != DrawStatus.DRAFT:
            raise ValidationFailedError(f"Draw is already {draw.status.value}", {"draw_id": draw.id})

        draw.status = DrawStatus.SUBMITTED
        await db.flush()
        return draw

    @staticmethod
    async def fund(db: AsyncSession, draw_id: int, performed_by: str) -> Dict[str, Any]:
        """
        Finalize a draw and run the partial billing cycle.

        Returns:
            ``{draw, paid, partial}`` with the invoice ids in each outcome
        """
        draw = await get_draw(db, draw_id)
        if draw.status == DrawStatus.FUNDED:
            raise ValidationFailedError("Draw is already funded", {"draw_id": draw.id})

        lines = await DrawService.get_lines(db, draw.id)
        invoices = []
        for line in lines:
            invoice = await get_invoice(db, line.invoice_id)
            if invoice.status == InvoiceStatus.IN_DRAW and invoice.draw_id == draw.id:
                await ensure_writable(db, "invoice", invoice.id, performed_by)
                invoices.append((line, invoice))

        paid, partial = [], []
        for line, invoice in invoices:
            line.paid = True
            invoice.paid_amount = money(invoice.paid_amount) + money(line.billed_amount)

            if abs(money(invoice.amount) - money(invoice.billed_amount)) <= epsilon():
                invoice.status = InvoiceStatus.PAID
                paid.append(invoice.id)
            else:
                # Remainder starts a new cycle from an empty ledger
                await clear_allocations(db, invoice.id)
                invoice.status = InvoiceStatus.NEEDS_REVIEW
                invoice.draw_id = None
                invoice.remove_flags(ReviewFlag.PARTIAL_APPROVAL)
                invoice.add_flags(ReviewFlag.PARTIAL_BILLED)
                partial.append(invoice.id)
            touch(invoice)

        draw.status = DrawStatus.FUNDED
        draw.funded_at = utcnow()
        draw.funded_by = performed_by
        await db.flush()

        for line, invoice in invoices:
            await log_activity(
                db, "invoice", invoice.id, ActivityAction.STATUS_CHANGED, performed_by,
                {"from": InvoiceStatus.IN_DRAW.value, "to": invoice.status.value, "draw_id": draw.id,
                 "billed_amount": str(invoice.billed_amount), "paid_amount": str(invoice.paid_amount)}
            )

        parents = {invoice.parent_invoice_id for _, invoice in invoices if invoice.is_split_child}
        for parent_id in sorted(parents):
            await InvoiceStateMachine.reconcile_split(db, parent_id, performed_by)

        await log_activity(
            db, "draw", draw.id, ActivityAction.DRAW_FUNDED, performed_by,
            {"paid": paid, "partial": partial}
        )
        logger.info("Draw funded", extra={"draw_id": draw.id, "paid": len(paid), "partial": len(partial), "performed_by": performed_by})

        return {"draw": draw, "paid": paid, "partial": partial}
