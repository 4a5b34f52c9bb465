"""
Undo log tests.

One replayable step per entity, the undo window, staleness detection and
snapshot replay for status changes, allocations, deletes and split families.
"""

import pytest
from decimal import Decimal

from backend.app.core.exceptions import (
    LockHeldError,
    UndoExpiredError,
    UndoNotFoundError,
    UndoStaleError,
    ValidationFailedError,
)
from backend.app.domain.invoices.allocation_ledger import AllocationLedger
from backend.app.domain.invoices.invoice_service import InvoiceService
from backend.app.domain.invoices.invoice_undo import InvoiceUndo
from backend.app.domain.invoices.records import get_allocations, get_invoice, get_live_children
from backend.app.domain.invoices.split_manager import SplitManager
from backend.app.domain.invoices.state_machine import InvoiceStateMachine
from backend.app.models.invoice_enums import InvoiceStatus, UndoStatus
from backend.app.services.entity_locking import acquire_lock
from backend.app.services.undo_log import (
    action_label,
    get_available_undo,
    list_recent_for_actor,
    remaining_seconds,
)


def test_action_labels():
    assert action_label("status_change:approved") == "Status change to approved"
    assert action_label("split") == "Split"
    assert action_label("bulk_import") == "Bulk import"


async def test_status_change_round_trip(db_session, make_invoice):
    invoice = await make_invoice()
    await InvoiceStateMachine.transition(db_session, invoice.id, "denied", "pm", reason="Duplicate")
    await db_session.commit()

    available = await get_available_undo(db_session, "invoice", invoice.id)
    assert available.action == "status_change:denied"
    assert remaining_seconds(available) == 30

    entry, restored = await InvoiceUndo.execute(db_session, "invoice", invoice.id, "pm")
    await db_session.commit()

    assert entry.status == UndoStatus.CONSUMED
    assert entry.consumed_by == "pm"
    assert restored.status == InvoiceStatus.NEEDS_REVIEW
    assert restored.denial_reason is None
    assert restored.denied_at is None

    # Undo is one step deep and records nothing itself
    with pytest.raises(UndoNotFoundError):
        await InvoiceUndo.execute(db_session, "invoice", invoice.id, "pm")


async def test_newer_action_supersedes_previous_entry(db_session, make_invoice):
    invoice = await make_invoice()
    await InvoiceStateMachine.transition(db_session, invoice.id, "ready_for_approval", "a")
    await InvoiceStateMachine.transition(db_session, invoice.id, "needs_review", "a")

    entry, restored = await InvoiceUndo.execute(db_session, "invoice", invoice.id, "a")

    assert entry.action == "status_change:needs_review"
    assert restored.status == InvoiceStatus.READY_FOR_APPROVAL
    with pytest.raises(UndoNotFoundError):
        await InvoiceUndo.execute(db_session, "invoice", invoice.id, "a")


async def test_undo_window_expires(db_session, frozen_clock, make_invoice):
    invoice = await make_invoice()
    await InvoiceStateMachine.transition(db_session, invoice.id, "denied", "pm")

    frozen_clock.advance(seconds=31)

    assert await get_available_undo(db_session, "invoice", invoice.id) is None
    with pytest.raises(UndoExpiredError):
        await InvoiceUndo.execute(db_session, "invoice", invoice.id, "pm")


async def test_stale_after_untracked_change(db_session, make_invoice):
    invoice = await make_invoice()
    await InvoiceStateMachine.transition(db_session, invoice.id, "denied", "pm")

    # A write that bumps the version without recording its own undo entry
    invoice.notes = "edited elsewhere"
    await db_session.flush()

    with pytest.raises(UndoStaleError) as exc_info:
        await InvoiceUndo.execute(db_session, "invoice", invoice.id, "pm")
    assert exc_info.value.details["recorded_version"] == 2
    assert exc_info.value.details["current_version"] == 3


async def test_undo_restores_allocation_set(db_session, cost_codes, make_invoice):
    invoice = await make_invoice("1000.00")
    await AllocationLedger.set_allocations(
        db_session, invoice.id, [{"cost_code_id": cost_codes["03100"].id, "amount": Decimal("300.00")}], "a"
    )
    await AllocationLedger.set_allocations(
        db_session, invoice.id, [{"cost_code_id": cost_codes["16100"].id, "amount": Decimal("900.00")}], "a"
    )

    await InvoiceUndo.execute(db_session, "invoice", invoice.id, "a")

    allocations = await get_allocations(db_session, invoice.id)
    assert [(a.cost_code_id, a.amount) for a in allocations] == [(cost_codes["03100"].id, Decimal("300.00"))]


async def test_undo_edit_and_delete(db_session, make_invoice):
    invoice = await make_invoice(notes="original")

    await InvoiceService.update(db_session, invoice.id, {"notes": "changed"}, "a")
    _, restored = await InvoiceUndo.execute(db_session, "invoice", invoice.id, "a")
    assert restored.notes == "original"

    await InvoiceService.soft_delete(db_session, invoice.id, "a")
    _, restored = await InvoiceUndo.execute(db_session, "invoice", invoice.id, "a")
    assert restored.deleted_at is None
    assert (await get_invoice(db_session, invoice.id)).id == invoice.id


async def test_undo_split_tombstones_children(db_session, make_invoice):
    invoice = await make_invoice("1000.00")
    parent, children = await SplitManager.split(
        db_session, invoice.id, [{"amount": Decimal("600.00")}, {"amount": Decimal("400.00")}], "a"
    )

    _, restored = await InvoiceUndo.execute(db_session, "invoice", parent.id, "a")

    assert restored.status == InvoiceStatus.NEEDS_REVIEW
    assert restored.is_split_parent is False
    assert restored.amount == Decimal("1000.00")
    assert await get_live_children(db_session, parent.id) == []
    assert all(child.deleted_at is not None for child in children)


async def test_undo_split_stale_when_child_moved(db_session, make_invoice):
    invoice = await make_invoice("1000.00")
    parent, children = await SplitManager.split(
        db_session, invoice.id, [{"amount": Decimal("600.00")}, {"amount": Decimal("400.00")}], "a"
    )
    await InvoiceStateMachine.transition(db_session, children[0].id, "denied", "pm")

    with pytest.raises(UndoStaleError):
        await InvoiceUndo.execute(db_session, "invoice", parent.id, "a")


async def test_undo_unsplit_revives_children(db_session, make_invoice):
    invoice = await make_invoice("1000.00")
    parent, children = await SplitManager.split(
        db_session, invoice.id, [{"amount": Decimal("600.00")}, {"amount": Decimal("400.00")}], "a"
    )
    await SplitManager.unsplit(db_session, parent.id, "a")

    _, restored = await InvoiceUndo.execute(db_session, "invoice", parent.id, "a")

    assert restored.status == InvoiceStatus.SPLIT
    assert restored.original_amount == Decimal("1000.00")
    live = await get_live_children(db_session, parent.id)
    assert sorted(c.id for c in live) == sorted(c.id for c in children)


async def test_undo_respects_locks(db_session, make_invoice):
    invoice = await make_invoice()
    await InvoiceStateMachine.transition(db_session, invoice.id, "denied", "pm")
    await acquire_lock(db_session, "invoice", invoice.id, "someone-else")

    with pytest.raises(LockHeldError):
        await InvoiceUndo.execute(db_session, "invoice", invoice.id, "pm")


async def test_unknown_entity_type(db_session):
    with pytest.raises(ValidationFailedError):
        await InvoiceUndo.execute(db_session, "vendor", 1, "pm")


async def test_recent_entries_for_actor(db_session, frozen_clock, make_invoice):
    first = await make_invoice(invoice_number="INV-1")
    second = await make_invoice(invoice_number="INV-2")
    await InvoiceStateMachine.transition(db_session, first.id, "denied", "pm")
    frozen_clock.advance(seconds=5)
    await InvoiceStateMachine.transition(db_session, second.id, "denied", "pm")
    await InvoiceStateMachine.transition(db_session, second.id, "needs_review", "someone-else")

    recent = await list_recent_for_actor(db_session, "pm")

    # The second invoice's entry was superseded by another actor
    assert [entry.entity_id for entry in recent] == [str(first.id)]
