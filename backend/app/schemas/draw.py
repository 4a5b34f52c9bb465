"""
Draw Pydantic schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
from backend.app.models.invoice_enums import DrawStatus


class DrawCreate(BaseModel):
    job_id: Optional[int] = None
    draw_number: Optional[int] = Field(None, ge=1)
    performed_by: str = Field(default="System", min_length=1, max_length=100)


class DrawActionRequest(BaseModel):
    performed_by: str = Field(..., min_length=1, max_length=100)


class DrawLineResponse(BaseModel):
    id: int
    invoice_id: int
    billed_amount: float
    paid: bool
    allocations: list
    created_at: datetime

    class Config:
        from_attributes = True


class DrawResponse(BaseModel):
    id: int
    draw_number: int
    job_id: Optional[int]
    status: DrawStatus
    funded_at: Optional[datetime]
    funded_by: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class DrawDetailResponse(DrawResponse):
    lines: List[DrawLineResponse] = []
    total: float = 0.0


class DrawFundResponse(BaseModel):
    success: bool = True
    draw: DrawResponse
    paid: List[int]
    partial: List[int]
