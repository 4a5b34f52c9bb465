"""
Invoice database model.

A billable vendor charge tracked through the approval and draw lifecycle.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, Date, DateTime, Numeric, ForeignKey, JSON, Enum,
)
from backend.app.core.clock import utcnow
from backend.app.db.session import Base
from backend.app.models.invoice_enums import InvoiceStatus


def enum_column_type(enum_cls, name: str) -> Enum:
    """Enum type persisted by value (lowercase status strings)."""
    return Enum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])


class Invoice(Base):
    """
    Invoice model.

    Amount is signed: a negative amount is a credit memo.
    Never hard-deleted; ``deleted_at`` is the tombstone and every query
    filters on it explicitly.
    ``version_id`` is bumped on every UPDATE and backs both optimistic
    concurrency and undo staleness detection.
    """
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Document details
    invoice_number = Column(String(100), nullable=True, index=True)
    invoice_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    # References (reference data lives outside this service)
    job_id = Column(Integer, nullable=True, index=True)
    vendor_id = Column(Integer, nullable=True, index=True)
    po_id = Column(Integer, nullable=True, index=True)
    draw_id = Column(Integer, ForeignKey("draws.id"), nullable=True, index=True)

    # Financials
    amount = Column(Numeric(14, 2), nullable=False)
    billed_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    paid_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    # Status
    status = Column(enum_column_type(InvoiceStatus, "invoice_status"), nullable=False,
                    default=InvoiceStatus.NEEDS_REVIEW, index=True)
    review_flags = Column(JSON, nullable=False, default=list)

    # Split family
    is_split_parent = Column(Boolean, nullable=False, default=False)
    parent_invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True, index=True)
    split_index = Column(Integer, nullable=True)
    original_amount = Column(Numeric(14, 2), nullable=True)
    pre_split_status = Column(enum_column_type(InvoiceStatus, "invoice_pre_split_status"), nullable=True)

    # Approval / denial
    approval_note = Column(Text, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String(100), nullable=True)
    denied_at = Column(DateTime, nullable=True)
    denied_by = Column(String(100), nullable=True)
    denial_reason = Column(Text, nullable=True)

    # Tombstone
    deleted_at = Column(DateTime, nullable=True, index=True)

    # Concurrency
    version_id = Column(Integer, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    # Fields captured in undo snapshots
    SNAPSHOT_FIELDS = (
        "invoice_number", "invoice_date", "due_date", "notes",
        "job_id", "vendor_id", "po_id", "draw_id",
        "amount", "billed_amount", "paid_amount",
        "status", "review_flags",
        "is_split_parent", "parent_invoice_id", "split_index", "original_amount", "pre_split_status",
        "approval_note", "approved_at", "approved_by", "denied_at", "denied_by", "denial_reason",
        "deleted_at",
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_credit(self) -> bool:
        return Decimal(self.amount) < 0

    @property
    def is_split_child(self) -> bool:
        return self.parent_invoice_id is not None

    def has_flag(self, flag: str) -> bool:
        return flag in (self.review_flags or [])

    def add_flags(self, *flags: str) -> None:
        # Reassign so the JSON column is marked dirty
        current = list(self.review_flags or [])
        for flag in flags:
            if flag not in current:
                current.append(flag)
        self.review_flags = current

    def remove_flags(self, *flags: str) -> None:
        self.review_flags = [f for f in (self.review_flags or []) if f not in flags]

    def to_snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy of every restorable field."""
        return {name: _encode(getattr(self, name)) for name in self.SNAPSHOT_FIELDS}

    def apply_snapshot(self, state: Dict[str, Any], fields: Iterable[str] = None) -> None:
        """Overwrite fields from a snapshot produced by ``to_snapshot``."""
        for name in fields or self.SNAPSHOT_FIELDS:
            if name not in state:
                continue
            column_type = self.__table__.c[name].type
            setattr(self, name, _decode(column_type, state[name]))

    def __repr__(self):
        status = self.status.value if self.status else None
        return f"<Invoice(id={self.id}, number='{self.invoice_number}', status='{status}', amount={self.amount})>"


def _encode(value):
    if value is None:
        return None
    if isinstance(value, InvoiceStatus):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, list):
        return list(value)
    return value


def _decode(column_type, value):
    if value is None:
        return None
    if isinstance(column_type, Enum):
        return InvoiceStatus.normalize(value)
    if isinstance(column_type, Numeric):
        return Decimal(str(value))
    if isinstance(column_type, DateTime):
        return datetime.fromisoformat(value)
    if isinstance(column_type, Date):
        return date.fromisoformat(value)
    if isinstance(column_type, JSON):
        return list(value)
    return value
