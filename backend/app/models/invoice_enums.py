"""
Invoice lifecycle enumerations.
"""

import enum


class InvoiceStatus(str, enum.Enum):
    """Invoice status enumeration."""
    NEEDS_REVIEW = "needs_review"  # Intake, accountant codes the invoice
    READY_FOR_APPROVAL = "ready_for_approval"  # Waiting on PM approval
    APPROVED = "approved"  # Ready to be placed in a draw
    IN_DRAW = "in_draw"  # Billed in a draw
    PAID = "paid"  # Draw funded
    DENIED = "denied"  # Rejected, may be resubmitted
    SPLIT = "split"  # Split parent, container only

    @classmethod
    def normalize(cls, value) -> "InvoiceStatus":
        """Map legacy spellings onto the canonical status."""
        if isinstance(value, cls):
            return value
        raw = str(value).strip().lower()
        return cls(LEGACY_STATUS_ALIASES.get(raw, raw))


LEGACY_STATUS_ALIASES = {
    "received": InvoiceStatus.NEEDS_REVIEW.value,
    "needs_approval": InvoiceStatus.READY_FOR_APPROVAL.value,
}

# Statuses an invoice may be split from
PRE_APPROVAL_STATUSES = frozenset({InvoiceStatus.NEEDS_REVIEW, InvoiceStatus.READY_FOR_APPROVAL})

# A split child in one of these blocks unsplit
PROCESSED_STATUSES = frozenset({InvoiceStatus.APPROVED, InvoiceStatus.IN_DRAW, InvoiceStatus.PAID})

# Allocation set is frozen while the invoice is in one of these; recall an
# approved invoice to ready_for_approval to recode it
ALLOCATION_LOCKED_STATUSES = frozenset({
    InvoiceStatus.APPROVED, InvoiceStatus.IN_DRAW, InvoiceStatus.PAID, InvoiceStatus.SPLIT
})


class ReviewFlag:
    """Review flag tags stored on invoices."""
    PARTIAL_APPROVAL = "partial_approval"
    PARTIAL_BILLED = "partial_billed"
    SPLIT_CHILD = "split_child"
    NO_JOB = "no_job"
    SPLIT_RECONCILED = "split_reconciled"


class DrawStatus(str, enum.Enum):
    """Draw status enumeration."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    FUNDED = "funded"


class UndoStatus(str, enum.Enum):
    """Undo entry status enumeration."""
    AVAILABLE = "AVAILABLE"  # Replayable
    CONSUMED = "CONSUMED"  # Already undone
    SUPERSEDED = "SUPERSEDED"  # Replaced by a newer entry
