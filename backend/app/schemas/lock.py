"""
Entity lock Pydantic schemas.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional, List


class LockAcquireRequest(BaseModel):
    entity_type: str = Field(..., min_length=1, max_length=50)
    entity_id: str = Field(..., min_length=1, max_length=64)
    locked_by: str = Field(..., min_length=1, max_length=100)

    @field_validator("entity_id", mode="before")
    @classmethod
    def coerce_entity_id(cls, value):
        # Clients send numeric ids as numbers
        return str(value) if isinstance(value, int) else value


class LockReleaseRequest(BaseModel):
    released_by: str = Field(..., min_length=1, max_length=100)


class LockForceReleaseRequest(LockReleaseRequest):
    entity_type: str = Field(..., min_length=1, max_length=50)
    entity_id: str = Field(..., min_length=1, max_length=64)

    @field_validator("entity_id", mode="before")
    @classmethod
    def coerce_entity_id(cls, value):
        return str(value) if isinstance(value, int) else value


class LockResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    locked_by: str
    locked_at: datetime
    expires_at: datetime

    class Config:
        from_attributes = True


class LockAcquireResponse(BaseModel):
    success: bool = True
    lock: LockResponse
    created: bool
    refreshed: bool


class LockReleaseResponse(BaseModel):
    success: bool = True
    released: bool


class LockForceReleaseResponse(BaseModel):
    success: bool = True
    previous_holder: Optional[str]


class LockStatusResponse(BaseModel):
    locked: bool
    holder: Optional[str] = None
    expires_at: Optional[datetime] = None
    lock_id: Optional[int] = None
    remaining_seconds: int = 0


class LockListResponse(BaseModel):
    locks: List[LockResponse]
    total: int
