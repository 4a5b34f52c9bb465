"""
Cost Code reference model.

Read-only to the billing engine; populated by the seed script.
"""

from sqlalchemy import Column, Integer, String, DateTime
from backend.app.core.clock import utcnow
from backend.app.db.session import Base


def is_change_order_code(code: str) -> bool:
    """Change-order cost codes end with the letter C (case-insensitive)."""
    return bool(code) and code.strip().upper().endswith("C")


class CostCode(Base):
    """Cost code reference record. Codes ending in 'C' are change-order codes."""
    __tablename__ = "cost_codes"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    @property
    def is_change_order_code(self) -> bool:
        return is_change_order_code(self.code)

    def __repr__(self):
        return f"<CostCode(id={self.id}, code='{self.code}')>"
