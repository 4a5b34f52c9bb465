"""
Invoice record helpers shared by the lifecycle services.

Loading (with explicit tombstone filtering), money arithmetic, version
bumping and the snapshot capture used by undo.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from sqlalchemy.orm.attributes import flag_modified

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.core.exceptions import ResourceNotFoundError, VersionConflictError
from backend.app.models.invoice import Invoice
from backend.app.models.allocation import InvoiceAllocation
from backend.app.models.draw import Draw, DrawInvoice

CENT = Decimal("0.01")


def money(value) -> Decimal:
    """Quantize to cents; accepts Decimal, int, float or numeric string."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def epsilon() -> Decimal:
    return Decimal(str(settings.allocation_epsilon))


async def get_invoice(db: AsyncSession, invoice_id: int, include_deleted: bool = False) -> Invoice:
    """
    Load an invoice by id.

    Raises:
        ResourceNotFoundError: Missing, or tombstoned unless ``include_deleted``
    """
    query = select(Invoice).where(Invoice.id == invoice_id)
    if not include_deleted:
        query = query.where(Invoice.deleted_at.is_(None))

    result = await db.execute(query)
    invoice = result.scalar_one_or_none()
    if invoice is None:
        raise ResourceNotFoundError("Invoice", invoice_id)
    return invoice


async def get_live_children(db: AsyncSession, parent_id: int) -> list[Invoice]:
    result = await db.execute(
        select(Invoice)
        .where(Invoice.parent_invoice_id == parent_id, Invoice.deleted_at.is_(None))
        .order_by(Invoice.split_index, Invoice.id)
    )
    return list(result.scalars().all())


async def get_allocations(db: AsyncSession, invoice_id: int) -> list[InvoiceAllocation]:
    result = await db.execute(
        select(InvoiceAllocation)
        .where(InvoiceAllocation.invoice_id == invoice_id)
        .order_by(InvoiceAllocation.id)
    )
    return list(result.scalars().all())


async def get_draw_lines(db: AsyncSession, invoice_id: int) -> list[DrawInvoice]:
    result = await db.execute(
        select(DrawInvoice)
        .where(DrawInvoice.invoice_id == invoice_id)
        .order_by(DrawInvoice.id)
    )
    return list(result.scalars().all())


async def get_draw(db: AsyncSession, draw_id: int) -> Draw:
    draw = await db.get(Draw, draw_id)
    if draw is None:
        raise ResourceNotFoundError("Draw", draw_id)
    return draw


async def get_draw_line(db: AsyncSession, draw_id: int, invoice_id: int) -> Optional[DrawInvoice]:
    result = await db.execute(
        select(DrawInvoice).where(DrawInvoice.draw_id == draw_id, DrawInvoice.invoice_id == invoice_id)
    )
    return result.scalar_one_or_none()


async def allocation_total(db: AsyncSession, invoice_id: int) -> Decimal:
    total = sum((money(a.amount) for a in await get_allocations(db, invoice_id)), Decimal("0.00"))
    return money(total)


async def clear_allocations(db: AsyncSession, invoice_id: int) -> None:
    await db.execute(delete(InvoiceAllocation).where(InvoiceAllocation.invoice_id == invoice_id))


def check_expected_version(invoice: Invoice, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != invoice.version_id:
        raise VersionConflictError("Invoice", invoice.id, expected_version, invoice.version_id)


def touch(invoice: Invoice) -> None:
    """Mark the invoice modified so the next flush bumps ``version_id``."""
    invoice.updated_at = utcnow()
    flag_modified(invoice, "updated_at")


async def capture_state(db: AsyncSession, invoice: Invoice) -> Dict[str, Any]:
    """Undo snapshot of an invoice with its allocation set and draw lines."""
    return {
        "invoice": invoice.to_snapshot(),
        "allocations": [a.to_snapshot() for a in await get_allocations(db, invoice.id)],
        "draw_lines": [line.to_snapshot() for line in await get_draw_lines(db, invoice.id)],
    }
