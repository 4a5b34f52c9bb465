"""
Invoice Allocation database model.

Distributes part of an invoice amount to a cost code.
"""

from decimal import Decimal
from sqlalchemy import Column, Integer, Numeric, ForeignKey, DateTime, Text
from backend.app.core.clock import utcnow
from backend.app.db.session import Base


class InvoiceAllocation(Base):
    """
    Invoice Allocation model.

    Owned by its invoice and always replaced as a whole set (delete then insert).
    A line coded to a change-order cost code must carry ``change_order_id``
    before the invoice can be approved.
    """
    __tablename__ = "invoice_allocations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Ownership
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)

    # Coding
    cost_code_id = Column(Integer, ForeignKey("cost_codes.id"), nullable=False, index=True)
    change_order_id = Column(Integer, nullable=True, index=True)

    # Financials
    amount = Column(Numeric(14, 2), nullable=False)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_snapshot(self) -> dict:
        return {
            "cost_code_id": self.cost_code_id,
            "change_order_id": self.change_order_id,
            "amount": str(self.amount),
            "notes": self.notes,
        }

    @classmethod
    def from_snapshot(cls, invoice_id: int, state: dict) -> "InvoiceAllocation":
        return cls(
            invoice_id=invoice_id,
            cost_code_id=state["cost_code_id"],
            change_order_id=state.get("change_order_id"),
            amount=Decimal(str(state["amount"])),
            notes=state.get("notes"),
        )

    def __repr__(self):
        return f"<InvoiceAllocation(invoice={self.invoice_id}, cost_code={self.cost_code_id}, amount={self.amount})>"
