"""
Allocation Ledger (Domain Logic).

Distributes an invoice amount across cost codes. The allocation set is
always replaced as a whole and validated before the first write:

1. amount_sign        every amount non-zero with the invoice's sign
2. cost_code_required every entry names a cost code
3. cost_code_unknown  the cost code exists and is live
4. over_allocated     |sum| <= |amount - billed_amount| + epsilon
5. status_locked      the set is frozen once approved (approved, in_draw, paid) or split

Under-allocation is always accepted and reported through the summary.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from backend.app.core.exceptions import AllocationInvalidError
from backend.app.models.allocation import InvoiceAllocation
from backend.app.models.cost_code import CostCode, is_change_order_code
from backend.app.models.invoice import Invoice
from backend.app.models.invoice_enums import ALLOCATION_LOCKED_STATUSES
from backend.app.domain.invoices.records import (
    money, epsilon, get_invoice, get_allocations, clear_allocations,
    check_expected_version, touch, capture_state,
)
from backend.app.services.activity import log_activity, ActivityAction
from backend.app.services.entity_locking import ensure_writable
from backend.app.services.undo_log import record_undo

logger = logging.getLogger(__name__)


class AllocationLedger:

    @staticmethod
    def summarize(invoice: Invoice, amounts: Iterable[Decimal]) -> Dict[str, Any]:
        amounts = [money(a) for a in amounts]
        total = money(sum(amounts, Decimal("0.00")))
        remaining = money(invoice.amount) - total
        return {
            "invoice_id": invoice.id,
            "amount": money(invoice.amount),
            "total": total,
            "remaining": remaining,
            "balanced": abs(remaining) <= epsilon(),
            "is_credit": invoice.is_credit,
            "allocation_count": len(amounts),
        }

    @staticmethod
    async def validate(db: AsyncSession, invoice: Invoice, entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Check a proposed allocation set against the invoice.

        Returns:
            Normalized entries (amounts quantized to cents)

        Raises:
            AllocationInvalidError: First rule broken, with ``rule`` naming it
        """
        normalized = []
        credit = invoice.is_credit

        for index, entry in enumerate(entries):
            amount = money(entry.get("amount"))
            if amount == 0 or (amount < 0) != credit:
                expected = "negative" if credit else "positive"
                raise AllocationInvalidError(
                    "amount_sign",
                    f"Allocation amounts must be {expected} for this invoice",
                    {"index": index, "amount": str(amount)}
                )
            normalized.append({
                "cost_code_id": entry.get("cost_code_id"),
                "change_order_id": entry.get("change_order_id"),
                "notes": entry.get("notes"),
                "amount": amount,
            })

        for index, entry in enumerate(normalized):
            if entry["cost_code_id"] is None:
                raise AllocationInvalidError(
                    "cost_code_required", "Every allocation needs a cost code", {"index": index}
                )

        requested_codes = {entry["cost_code_id"] for entry in normalized}
        if requested_codes:
            result = await db.execute(
                select(CostCode.id).where(CostCode.id.in_(requested_codes), CostCode.deleted_at.is_(None))
            )
            unknown = sorted(requested_codes - set(result.scalars().all()))
            if unknown:
                raise AllocationInvalidError(
                    "cost_code_unknown", "Unknown cost code", {"cost_code_ids": unknown}
                )

        total = money(sum((entry["amount"] for entry in normalized), Decimal("0.00")))
        room = abs(money(invoice.amount) - money(invoice.billed_amount))
        if abs(total) > room + epsilon():
            raise AllocationInvalidError(
                "over_allocated",
                f"Allocations ({total}) exceed the unbilled invoice amount ({room})",
                {"total": str(total), "available": str(room)}
            )

        if invoice.status in ALLOCATION_LOCKED_STATUSES:
            raise AllocationInvalidError(
                "status_locked",
                f"Allocations cannot change while the invoice is {invoice.status.value}",
                {"status": invoice.status.value}
            )

        return normalized

    @staticmethod
    async def set_allocations(
        db: AsyncSession,
        invoice_id: int,
        entries: List[Dict[str, Any]],
        performed_by: str,
        expected_version: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Replace the invoice's allocation set (delete then insert).

        Args:
            db: Database session (caller commits)
            invoice_id: Invoice to allocate
            entries: ``{cost_code_id, amount, change_order_id?, notes?}`` dicts
            performed_by: Actor display name
            expected_version: Optional optimistic-concurrency check

        Returns:
            Allocation summary of the new set
        """
        invoice = await get_invoice(db, invoice_id)
        await ensure_writable(db, "invoice", invoice.id, performed_by)
        check_expected_version(invoice, expected_version)

        normalized = await AllocationLedger.validate(db, invoice, entries)
        previous_state = await capture_state(db, invoice)

        await clear_allocations(db, invoice.id)
        db.add_all([
            InvoiceAllocation(invoice_id=invoice.id, **entry)
            for entry in normalized
        ])
        touch(invoice)
        await db.flush()

        summary = AllocationLedger.summarize(invoice, [entry["amount"] for entry in normalized])

        await log_activity(
            db, "invoice", invoice.id, ActivityAction.ALLOCATIONS_UPDATED, performed_by,
            {"count": len(normalized), "total": str(summary["total"]), "balanced": summary["balanced"]}
        )
        await record_undo(
            db, "invoice", invoice.id, "allocations_update", previous_state, performed_by,
            entity_version=invoice.version_id
        )

        return summary

    @staticmethod
    async def get_summary(db: AsyncSession, invoice_id: int) -> Dict[str, Any]:
        invoice = await get_invoice(db, invoice_id)
        allocations = await get_allocations(db, invoice.id)
        return AllocationLedger.summarize(invoice, [a.amount for a in allocations])

    @staticmethod
    async def list_allocations(db: AsyncSession, invoice_id: int) -> list[InvoiceAllocation]:
        invoice = await get_invoice(db, invoice_id)
        return await get_allocations(db, invoice.id)

    @staticmethod
    async def change_order_violations(db: AsyncSession, invoice_id: int) -> List[Dict[str, Any]]:
        """Allocations coded to a change-order cost code but not linked to a change order."""
        result = await db.execute(
            select(InvoiceAllocation.id, CostCode.code)
            .join(CostCode, CostCode.id == InvoiceAllocation.cost_code_id)
            .where(
                InvoiceAllocation.invoice_id == invoice_id,
                InvoiceAllocation.change_order_id.is_(None)
            )
            .order_by(InvoiceAllocation.id)
        )
        return [
            {"allocation_id": allocation_id, "cost_code": code}
            for allocation_id, code in result.all()
            if is_change_order_code(code)
        ]
