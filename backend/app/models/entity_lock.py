"""
Entity Lock database model.

Ensures only one active editing lease per record through a DB-level unique constraint.
"""

from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from backend.app.core.clock import utcnow
from backend.app.db.session import Base


class EntityLock(Base):
    """
    Entity Lock model.

    A time-bounded lease on any editable record, independent of entity type.
    Refreshed in place by its holder, deleted on release, and treated as
    absent once ``expires_at`` has passed.
    """
    __tablename__ = "entity_locks"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # What is locked
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)

    # Who holds it
    locked_by = Column(String(100), nullable=False)

    # Lease lifecycle
    locked_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    # Unique constraint: one lock row per entity
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_entity_locks_entity"),
    )

    def is_active(self, now) -> bool:
        return self.expires_at > now

    def __repr__(self):
        return f"<EntityLock(entity={self.entity_type}/{self.entity_id}, holder='{self.locked_by}', expires={self.expires_at})>"
