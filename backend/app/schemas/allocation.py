"""
Allocation Pydantic schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List


class AllocationEntry(BaseModel):
    """One proposed allocation line. Ledger rules are checked server side."""
    cost_code_id: Optional[int] = None
    amount: Decimal = Field(..., max_digits=14, decimal_places=2)
    change_order_id: Optional[int] = None
    notes: Optional[str] = None


class AllocationsUpdateRequest(BaseModel):
    """Replaces the whole allocation set; an empty list clears it."""
    allocations: List[AllocationEntry]
    performed_by: str = Field(..., min_length=1, max_length=100)
    expected_version: Optional[int] = None


class AllocationResponse(BaseModel):
    id: int
    invoice_id: int
    cost_code_id: int
    change_order_id: Optional[int]
    amount: float
    notes: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class AllocationSummaryResponse(BaseModel):
    invoice_id: int
    amount: float
    total: float
    remaining: float
    balanced: bool
    is_credit: bool
    allocation_count: int
