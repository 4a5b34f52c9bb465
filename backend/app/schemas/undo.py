"""
Undo Pydantic schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Any, Dict
from backend.app.models.invoice_enums import UndoStatus
from backend.app.schemas.invoice import InvoiceResponse


class UndoEntryResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    action: str
    performed_by: str
    status: UndoStatus
    created_at: datetime
    expires_at: datetime

    class Config:
        from_attributes = True


class UndoAvailableResponse(BaseModel):
    available: bool
    undo_entry: Optional[UndoEntryResponse] = None
    action_label: Optional[str] = None
    remaining_seconds: Optional[int] = None


class UndoRequest(BaseModel):
    performed_by: str = Field(default="System", min_length=1, max_length=100)


class UndoExecuteResponse(BaseModel):
    success: bool = True
    undone_action: str
    restored_state: Dict[str, Any]
    invoice: InvoiceResponse


class UndoRecentResponse(BaseModel):
    entries: List[UndoEntryResponse]
    total: int
