"""
Undo Entry database model.

Stores the pre-action snapshot that lets the most recent action on an entity be reversed.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, text
from backend.app.core.clock import utcnow
from backend.app.db.session import Base
from backend.app.models.invoice import enum_column_type
from backend.app.models.invoice_enums import UndoStatus


class UndoEntry(Base):
    """
    Undo Entry model.

    At most one AVAILABLE entry per entity, enforced by a partial unique index.
    Consumed and superseded entries stay for audit but are never replayed.
    ``entity_version`` is the entity's version right after the recorded
    action; any later unrecorded write makes the entry stale.
    """
    __tablename__ = "undo_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Target
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)

    # What happened
    action = Column(String(100), nullable=False)
    previous_state = Column(JSON, nullable=False)
    performed_by = Column(String(100), nullable=False, index=True)

    # State
    status = Column(enum_column_type(UndoStatus, "undo_status"), nullable=False, default=UndoStatus.AVAILABLE)
    entity_version = Column(Integer, nullable=True)

    # Lifecycle
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    consumed_by = Column(String(100), nullable=True)

    __table_args__ = (
        Index("ix_undo_entries_entity", "entity_type", "entity_id", "created_at"),
        Index(
            "ix_undo_entries_available", "entity_type", "entity_id", unique=True,
            postgresql_where=text("status = 'AVAILABLE'"),
            sqlite_where=text("status = 'AVAILABLE'"),
        ),
    )

    def __repr__(self):
        return f"<UndoEntry(id={self.id}, entity={self.entity_type}/{self.entity_id}, action='{self.action}', status='{self.status.value}')>"
