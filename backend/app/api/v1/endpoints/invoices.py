"""
Invoice API Endpoints.

Intake, coding edits, status transitions (single and bulk), allocations and
split families. Every mutation commits here and publishes its change event after commit.
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.db.session import get_db
from backend.app.core.dependencies import get_event_bus
from backend.app.domain.invoices.allocation_ledger import AllocationLedger
from backend.app.domain.invoices.bulk import BulkInvoiceService
from backend.app.domain.invoices.draws import DrawService
from backend.app.domain.invoices.invoice_service import InvoiceService
from backend.app.domain.invoices.split_manager import SplitManager
from backend.app.domain.invoices.state_machine import InvoiceStateMachine
from backend.app.schemas.allocation import (
    AllocationsUpdateRequest, AllocationResponse, AllocationSummaryResponse,
)
from backend.app.schemas.invoice import (
    InvoiceCreate, InvoiceUpdate, InvoiceDeleteRequest, InvoiceResponse,
    TransitionRequest, UnpayRequest,
    SplitRequest, SplitResponse, UnsplitRequest, UnsplitResponse, FamilyResponse,
    BulkApproveRequest, BulkDenyRequest, BulkAddToDrawRequest, BulkTransitionResponse,
    ActivityResponse,
)
from backend.app.services.activity import get_activity_trail
from backend.app.services.event_bus import EventBus, EventType

router = APIRouter(prefix="/invoices", tags=["Invoices"])


def _invoice_event(invoice, action: str, performed_by: str) -> dict:
    return {
        "action": action,
        "invoice": InvoiceResponse.model_validate(invoice),
        "performed_by": performed_by,
    }


@router.post("", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    body: InvoiceCreate,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """Intake a new invoice in needs_review."""
    invoice = await InvoiceService.create(
        db, body.model_dump(exclude={"performed_by"}), body.performed_by
    )
    await db.commit()

    bus.publish(EventType.INVOICE_UPDATE, _invoice_event(invoice, "created", body.performed_by))
    return InvoiceResponse.model_validate(invoice)


def _publish_bulk(bus: EventBus, result: dict, action: str, performed_by: str):
    for invoice in result["invoices"]:
        bus.publish(EventType.INVOICE_UPDATE, _invoice_event(invoice, action, performed_by))


def _bulk_response(result: dict, draw_total=None) -> BulkTransitionResponse:
    return BulkTransitionResponse(
        status=result["status"],
        success=result["success"],
        failed=result["failed"],
        draw_total=draw_total,
    )


@router.post("/bulk/approve", response_model=BulkTransitionResponse)
async def bulk_approve(
    body: BulkApproveRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """
    Approve many invoices. Each runs the full approval guard; failures are
    reported per invoice and do not stop the batch.
    """
    result = await BulkInvoiceService.approve(db, body.invoice_ids, body.performed_by, note=body.note)
    await db.commit()

    _publish_bulk(bus, result, "approved", body.performed_by)
    return _bulk_response(result)


@router.post("/bulk/deny", response_model=BulkTransitionResponse)
async def bulk_deny(
    body: BulkDenyRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    result = await BulkInvoiceService.deny(db, body.invoice_ids, body.reason, body.performed_by)
    await db.commit()

    _publish_bulk(bus, result, "denied", body.performed_by)
    return _bulk_response(result)


@router.post("/bulk/add-to-draw", response_model=BulkTransitionResponse)
async def bulk_add_to_draw(
    body: BulkAddToDrawRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """Place approved invoices in a draft draw and report the new draw total."""
    result = await BulkInvoiceService.add_to_draw(db, body.invoice_ids, body.draw_id, body.performed_by)
    _, _, total = await DrawService.get_with_lines(db, body.draw_id)
    await db.commit()

    _publish_bulk(bus, result, "in_draw", body.performed_by)
    if result["success"]:
        bus.publish(EventType.DRAW_UPDATE, {"draw_id": body.draw_id, "invoice_ids": result["success"]})
    return _bulk_response(result, draw_total=total)


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(invoice_id: int, db: AsyncSession = Depends(get_db)):
    invoice = await InvoiceService.get(db, invoice_id)
    return InvoiceResponse.model_validate(invoice)


@router.patch("/{invoice_id}", response_model=InvoiceResponse)
async def update_invoice(
    invoice_id: int,
    body: InvoiceUpdate,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """Edit coding fields (job, vendor, PO, number, dates, notes, amount)."""
    invoice = await InvoiceService.update(
        db, invoice_id, body.changes(), body.performed_by, body.expected_version
    )
    await db.commit()

    bus.publish(EventType.INVOICE_UPDATE, _invoice_event(invoice, "edited", body.performed_by))
    return InvoiceResponse.model_validate(invoice)


@router.delete("/{invoice_id}")
async def delete_invoice(
    invoice_id: int,
    body: InvoiceDeleteRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """Soft delete. Undoable within the undo window."""
    invoice = await InvoiceService.soft_delete(db, invoice_id, body.performed_by, body.expected_version)
    await db.commit()

    bus.publish(EventType.INVOICE_UPDATE, _invoice_event(invoice, "deleted", body.performed_by))
    return {"success": True, "invoice_id": invoice.id}


@router.post("/{invoice_id}/transition", response_model=InvoiceResponse)
async def transition_invoice(
    invoice_id: int,
    body: TransitionRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """
    Move an invoice to a new status.

    Edges outside the transition table fail with TRANSITION_NOT_ALLOWED.
    """
    invoice = await InvoiceStateMachine.transition(
        db,
        invoice_id,
        body.new_status,
        body.performed_by,
        note=body.note,
        reason=body.reason,
        draw_id=body.draw_id,
        expected_version=body.expected_version,
    )
    await db.commit()

    bus.publish(EventType.INVOICE_UPDATE, _invoice_event(invoice, body.new_status.value, body.performed_by))
    if body.draw_id is not None or invoice.draw_id is not None:
        bus.publish(EventType.DRAW_UPDATE, {"draw_id": body.draw_id or invoice.draw_id, "invoice_id": invoice.id})
    return InvoiceResponse.model_validate(invoice)


@router.post("/{invoice_id}/unpay", response_model=InvoiceResponse)
async def unpay_invoice(
    invoice_id: int,
    body: UnpayRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """Reverse a payment (paid -> in_draw)."""
    invoice = await InvoiceStateMachine.unpay(db, invoice_id, body.performed_by, body.expected_version)
    await db.commit()

    bus.publish(EventType.INVOICE_UPDATE, _invoice_event(invoice, "unpaid", body.performed_by))
    return InvoiceResponse.model_validate(invoice)


@router.get("/{invoice_id}/allocations", response_model=list[AllocationResponse])
async def list_allocations(invoice_id: int, db: AsyncSession = Depends(get_db)):
    allocations = await AllocationLedger.list_allocations(db, invoice_id)
    return [AllocationResponse.model_validate(a) for a in allocations]


@router.patch("/{invoice_id}/allocations", response_model=AllocationSummaryResponse)
async def set_allocations(
    invoice_id: int,
    body: AllocationsUpdateRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """
    Replace the whole allocation set.

    Over-allocation is rejected; under-allocation is accepted and reported.
    """
    summary = await AllocationLedger.set_allocations(
        db,
        invoice_id,
        [entry.model_dump() for entry in body.allocations],
        body.performed_by,
        expected_version=body.expected_version,
    )
    await db.commit()

    bus.publish(EventType.ALLOCATION_UPDATE, {
        "invoice_id": invoice_id,
        "summary": summary,
        "performed_by": body.performed_by,
    })
    return AllocationSummaryResponse(**summary)


@router.get("/{invoice_id}/allocations/summary", response_model=AllocationSummaryResponse)
async def allocation_summary(invoice_id: int, db: AsyncSession = Depends(get_db)):
    return AllocationSummaryResponse(**await AllocationLedger.get_summary(db, invoice_id))


@router.post("/{invoice_id}/split", response_model=SplitResponse)
async def split_invoice(
    invoice_id: int,
    body: SplitRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """Split an invoice into two or more children that sum to its amount."""
    parent, children = await SplitManager.split(
        db, invoice_id, [entry.model_dump() for entry in body.splits], body.performed_by
    )
    await db.commit()

    bus.publish(EventType.INVOICE_SPLIT, {
        "parent_id": parent.id,
        "children": [
            {"id": child.id, "invoice_number": child.invoice_number, "amount": child.amount}
            for child in children
        ],
        "performed_by": body.performed_by,
    })
    return SplitResponse(
        parent_id=parent.id,
        children=[InvoiceResponse.model_validate(child) for child in children],
        message=f"Invoice split into {len(children)} parts",
    )


@router.post("/{invoice_id}/unsplit", response_model=UnsplitResponse)
async def unsplit_invoice(
    invoice_id: int,
    body: UnsplitRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """Merge a split family back into its parent."""
    parent, removed = await SplitManager.unsplit(db, invoice_id, body.performed_by)
    await db.commit()

    bus.publish(EventType.INVOICE_UNSPLIT, {
        "parent_id": parent.id,
        "deleted_children": removed,
        "performed_by": body.performed_by,
    })
    return UnsplitResponse(
        parent_id=parent.id,
        deleted_children=len(removed),
        message=f"Invoice unsplit - {len(removed)} child invoice(s) removed",
    )


@router.get("/{invoice_id}/family", response_model=FamilyResponse)
async def invoice_family(invoice_id: int, db: AsyncSession = Depends(get_db)):
    """Parent and live children, from either the parent or a child id."""
    family = await SplitManager.get_family(db, invoice_id)
    return FamilyResponse(
        is_split=family["is_split"],
        parent=InvoiceResponse.model_validate(family["parent"]) if family["parent"] else None,
        children=[InvoiceResponse.model_validate(child) for child in family["children"]],
    )


@router.get("/{invoice_id}/activity", response_model=list[ActivityResponse])
async def invoice_activity(
    invoice_id: int,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    await InvoiceService.get(db, invoice_id)
    entries = await get_activity_trail(db, "invoice", invoice_id, limit=limit)
    return [ActivityResponse.model_validate(entry) for entry in entries]
