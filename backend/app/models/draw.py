"""
Draw database models.

A draw batches approved invoices into one payment request. Each invoice
placed in a draw gets a line recording the portion that draw carries.
"""

from decimal import Decimal
from sqlalchemy import Column, Integer, String, Boolean, Numeric, ForeignKey, DateTime, JSON, UniqueConstraint
from backend.app.core.clock import utcnow
from backend.app.db.session import Base
from backend.app.models.invoice import enum_column_type
from backend.app.models.invoice_enums import DrawStatus


class Draw(Base):
    """
    Draw model.

    Workflow: draft -> submitted -> funded. Funding finalizes billing for
    every line. The draw total is computed from lines, never stored.
    """
    __tablename__ = "draws"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    draw_number = Column(Integer, nullable=False)
    job_id = Column(Integer, nullable=True, index=True)

    status = Column(enum_column_type(DrawStatus, "draw_status"), nullable=False, default=DrawStatus.DRAFT, index=True)

    funded_at = Column(DateTime, nullable=True)
    funded_by = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Draw(id={self.id}, number={self.draw_number}, status='{self.status.value}')>"


class DrawInvoice(Base):
    """One invoice's billed portion within a draw."""
    __tablename__ = "draw_invoices"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    draw_id = Column(Integer, ForeignKey("draws.id"), nullable=False, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)

    billed_amount = Column(Numeric(14, 2), nullable=False)
    allocations = Column(JSON, nullable=False, default=list)  # Copy of the allocations billed
    paid = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("draw_id", "invoice_id", name="uq_draw_invoices_draw_invoice"),
    )

    def to_snapshot(self) -> dict:
        return {
            "draw_id": self.draw_id,
            "billed_amount": str(self.billed_amount),
            "allocations": list(self.allocations or []),
            "paid": self.paid,
        }

    @classmethod
    def from_snapshot(cls, invoice_id: int, state: dict) -> "DrawInvoice":
        return cls(
            draw_id=state["draw_id"],
            invoice_id=invoice_id,
            billed_amount=Decimal(str(state["billed_amount"])),
            allocations=list(state.get("allocations") or []),
            paid=bool(state.get("paid")),
        )

    def __repr__(self):
        return f"<DrawInvoice(draw={self.draw_id}, invoice={self.invoice_id}, billed={self.billed_amount})>"
