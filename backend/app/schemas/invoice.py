"""
Invoice Pydantic schemas.

Defines request and response models for invoice intake, coding edits,
status transitions, bulk operations and split families. Money comes in as
Decimal and goes out as float.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List
from backend.app.models.invoice_enums import InvoiceStatus


class InvoiceCreate(BaseModel):
    """Schema for intake of a new invoice."""
    amount: Decimal = Field(..., max_digits=14, decimal_places=2, description="Signed amount; negative for credit memos")
    invoice_number: Optional[str] = Field(None, max_length=100)
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    job_id: Optional[int] = None
    vendor_id: Optional[int] = None
    po_id: Optional[int] = None
    notes: Optional[str] = None
    performed_by: str = Field(default="System", min_length=1, max_length=100)


class InvoiceUpdate(BaseModel):
    """Schema for editing coding fields. Only fields sent are changed."""
    amount: Optional[Decimal] = Field(None, max_digits=14, decimal_places=2)
    invoice_number: Optional[str] = Field(None, max_length=100)
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    job_id: Optional[int] = None
    vendor_id: Optional[int] = None
    po_id: Optional[int] = None
    notes: Optional[str] = None
    performed_by: str = Field(..., min_length=1, max_length=100)
    expected_version: Optional[int] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={"performed_by", "expected_version"})


class InvoiceDeleteRequest(BaseModel):
    performed_by: str = Field(..., min_length=1, max_length=100)
    expected_version: Optional[int] = None


class TransitionRequest(BaseModel):
    """Schema for a status transition. Legacy status names are accepted."""
    new_status: InvoiceStatus
    performed_by: str = Field(..., min_length=1, max_length=100)
    note: Optional[str] = None
    reason: Optional[str] = None
    draw_id: Optional[int] = None
    expected_version: Optional[int] = None

    @field_validator("new_status", mode="before")
    @classmethod
    def normalize_status(cls, value):
        return InvoiceStatus.normalize(value)


class UnpayRequest(BaseModel):
    performed_by: str = Field(..., min_length=1, max_length=100)
    expected_version: Optional[int] = None


class InvoiceResponse(BaseModel):
    """Schema for invoice response."""
    id: int
    invoice_number: Optional[str]
    invoice_date: Optional[date]
    due_date: Optional[date]
    job_id: Optional[int]
    vendor_id: Optional[int]
    po_id: Optional[int]
    draw_id: Optional[int]
    amount: float
    billed_amount: float
    paid_amount: float
    status: InvoiceStatus
    review_flags: List[str]
    is_split_parent: bool
    parent_invoice_id: Optional[int]
    split_index: Optional[int]
    original_amount: Optional[float]
    notes: Optional[str]
    approval_note: Optional[str]
    approved_at: Optional[datetime]
    approved_by: Optional[str]
    denied_at: Optional[datetime]
    denied_by: Optional[str]
    denial_reason: Optional[str]
    deleted_at: Optional[datetime]
    version_id: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SplitEntry(BaseModel):
    amount: Decimal = Field(..., max_digits=14, decimal_places=2)
    job_id: Optional[int] = None
    notes: Optional[str] = None


class SplitRequest(BaseModel):
    """Schema for splitting an invoice into children."""
    splits: List[SplitEntry]
    performed_by: str = Field(default="System", min_length=1, max_length=100)


class SplitResponse(BaseModel):
    success: bool = True
    parent_id: int
    children: List[InvoiceResponse]
    message: str


class UnsplitRequest(BaseModel):
    performed_by: str = Field(default="System", min_length=1, max_length=100)


class UnsplitResponse(BaseModel):
    success: bool = True
    parent_id: int
    deleted_children: int
    message: str


class FamilyResponse(BaseModel):
    is_split: bool
    parent: Optional[InvoiceResponse]
    children: List[InvoiceResponse]


class BulkApproveRequest(BaseModel):
    invoice_ids: List[int] = Field(..., min_length=1)
    performed_by: str = Field(..., min_length=1, max_length=100)
    note: Optional[str] = None


class BulkDenyRequest(BaseModel):
    invoice_ids: List[int] = Field(..., min_length=1)
    performed_by: str = Field(..., min_length=1, max_length=100)
    reason: str = Field(..., min_length=1)


class BulkAddToDrawRequest(BaseModel):
    invoice_ids: List[int] = Field(..., min_length=1)
    draw_id: int
    performed_by: str = Field(..., min_length=1, max_length=100)


class BulkFailure(BaseModel):
    id: int
    error_code: str
    error: str


class BulkTransitionResponse(BaseModel):
    """Per-invoice outcome of a bulk operation. Failures do not abort the batch."""
    status: InvoiceStatus
    success: List[int]
    failed: List[BulkFailure]
    draw_total: Optional[float] = None


class ActivityResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    action: str
    performed_by: str
    details: Optional[dict]
    timestamp: datetime

    class Config:
        from_attributes = True
