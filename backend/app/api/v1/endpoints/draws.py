"""
Draw API Endpoints.

Payment draws batch approved invoices. Funding a draw settles every
invoice in it and sends partially billed invoices back for another cycle.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.db.session import get_db
from backend.app.core.dependencies import get_event_bus
from backend.app.domain.invoices.draws import DrawService
from backend.app.schemas.draw import (
    DrawCreate, DrawActionRequest, DrawResponse, DrawDetailResponse, DrawLineResponse, DrawFundResponse,
)
from backend.app.services.event_bus import EventBus, EventType

router = APIRouter(prefix="/draws", tags=["Draws"])


@router.post("", response_model=DrawResponse, status_code=status.HTTP_201_CREATED)
async def create_draw(
    body: DrawCreate,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    draw = await DrawService.create(db, body.performed_by, job_id=body.job_id, draw_number=body.draw_number)
    await db.commit()

    bus.publish(EventType.DRAW_UPDATE, {"action": "created", "draw": DrawResponse.model_validate(draw)})
    return DrawResponse.model_validate(draw)


@router.get("/{draw_id}", response_model=DrawDetailResponse)
async def get_draw(draw_id: int, db: AsyncSession = Depends(get_db)):
    """Draw with its lines and computed total."""
    draw, lines, total = await DrawService.get_with_lines(db, draw_id)
    return DrawDetailResponse(
        **DrawResponse.model_validate(draw).model_dump(),
        lines=[DrawLineResponse.model_validate(line) for line in lines],
        total=float(total),
    )


@router.post("/{draw_id}/submit", response_model=DrawResponse)
async def submit_draw(
    draw_id: int,
    body: DrawActionRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    draw = await DrawService.submit(db, draw_id, body.performed_by)
    await db.commit()

    bus.publish(EventType.DRAW_UPDATE, {"action": "submitted", "draw": DrawResponse.model_validate(draw)})
    return DrawResponse.model_validate(draw)


@router.post("/{draw_id}/fund", response_model=DrawFundResponse)
async def fund_draw(
    draw_id: int,
    body: DrawActionRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus)
):
    """Finalize the draw and run the partial billing cycle."""
    result = await DrawService.fund(db, draw_id, body.performed_by)
    await db.commit()

    draw = DrawResponse.model_validate(result["draw"])
    bus.publish(EventType.DRAW_UPDATE, {
        "action": "funded",
        "draw": draw,
        "paid": result["paid"],
        "partial": result["partial"],
    })
    for invoice_id in result["paid"] + result["partial"]:
        bus.publish(EventType.INVOICE_UPDATE, {"action": "draw_funded", "invoice_id": invoice_id, "draw_id": draw_id})

    return DrawFundResponse(draw=draw, paid=result["paid"], partial=result["partial"])
