"""
Activity Log Database Model.

Append-only trail of every billing engine action for review and compliance.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from backend.app.core.clock import utcnow
from backend.app.db.session import Base


class ActivityLog(Base):
    """
    Activity log model for tracking billing actions.

    Actions logged:
    - INVOICE_CREATED / INVOICE_UPDATED / INVOICE_DELETED
    - STATUS_CHANGED / INVOICE_UNPAID
    - ALLOCATIONS_UPDATED
    - INVOICE_SPLIT / INVOICE_UNSPLIT / SPLIT_RECONCILED
    - DRAW_CREATED / DRAW_FUNDED
    - UNDO_EXECUTED / LOCK_FORCE_RELEASED
    """
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Which record the action touched
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False, index=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # Who performed it (display name, or "system")
    performed_by = Column(String(100), nullable=False)

    # Additional context (JSON for flexibility)
    details = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<ActivityLog(id={self.id}, action='{self.action}', entity={self.entity_type}/{self.entity_id}, by={self.performed_by})>"
