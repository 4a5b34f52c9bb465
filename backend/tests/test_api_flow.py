"""
HTTP API flow tests.

Runs the invoice lifecycle end to end through the endpoints and checks the
error envelope for each taxonomy code.
"""

from httpx import AsyncClient

from backend.app.services.event_bus import EventType


async def create_invoice(client: AsyncClient, amount="1000.00", **fields) -> dict:
    payload = {"amount": amount, "invoice_number": "INV-900", "job_id": 1, "vendor_id": 7, "performed_by": "accountant"}
    payload.update(fields)
    response = await client.post("/v1/invoices", json=payload)
    assert response.status_code == 201
    return response.json()


async def transition(client: AsyncClient, invoice_id: int, new_status: str, performed_by="pm", **fields):
    return await client.post(
        f"/v1/invoices/{invoice_id}/transition",
        json={"new_status": new_status, "performed_by": performed_by, **fields}
    )


def drain(sub) -> list:
    events = []
    while not sub.queue.empty():
        events.append(sub.queue.get_nowait())
    return events


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_intake_flags_missing_job(client):
    with_job = await create_invoice(client)
    without_job = await create_invoice(client, job_id=None)

    assert with_job["status"] == "needs_review"
    assert with_job["review_flags"] == []
    assert with_job["amount"] == 1000.0
    assert without_job["review_flags"] == ["no_job"]


async def test_full_lifecycle_to_paid(client, cost_codes, event_bus):
    sub = event_bus.subscribe()
    invoice = await create_invoice(client)
    invoice_id = invoice["id"]

    response = await transition(client, invoice_id, "needs_approval", "accountant")
    assert response.status_code == 200
    assert response.json()["status"] == "ready_for_approval"

    response = await client.patch(
        f"/v1/invoices/{invoice_id}/allocations",
        json={"allocations": [{"cost_code_id": cost_codes["03100"].id, "amount": "1000.00"}], "performed_by": "accountant"}
    )
    assert response.status_code == 200
    assert response.json()["balanced"] is True

    assert (await transition(client, invoice_id, "approved")).status_code == 200

    draw = (await client.post("/v1/draws", json={"job_id": 1, "performed_by": "pm"})).json()
    assert draw["draw_number"] == 1

    response = await transition(client, invoice_id, "in_draw", draw_id=draw["id"])
    assert response.json()["billed_amount"] == 1000.0

    detail = (await client.get(f"/v1/draws/{draw['id']}")).json()
    assert detail["total"] == 1000.0
    assert [line["invoice_id"] for line in detail["lines"]] == [invoice_id]

    assert (await client.post(f"/v1/draws/{draw['id']}/submit", json={"performed_by": "pm"})).json()["status"] == "submitted"

    funded = await client.post(f"/v1/draws/{draw['id']}/fund", json={"performed_by": "owner"})
    assert funded.status_code == 200
    assert funded.json()["paid"] == [invoice_id]

    final = (await client.get(f"/v1/invoices/{invoice_id}")).json()
    assert final["status"] == "paid"
    assert final["paid_amount"] == 1000.0

    events = [envelope["event"] for envelope in drain(sub)]
    assert EventType.ALLOCATION_UPDATE in events
    assert EventType.DRAW_UPDATE in events
    assert events.count(EventType.INVOICE_UPDATE) >= 4

    trail = (await client.get(f"/v1/invoices/{invoice_id}/activity")).json()
    assert trail[0]["action"] == "STATUS_CHANGED"
    assert trail[-1]["action"] == "INVOICE_CREATED"


async def test_not_found_envelope(client):
    response = await client.get("/v1/invoices/999")

    assert response.status_code == 404
    body = response.json()
    assert body["error_code"] == "NOT_FOUND"
    assert body["details"]["resource"] == "Invoice"


async def test_transition_errors(client):
    invoice = await create_invoice(client)

    response = await transition(client, invoice["id"], "paid")
    assert response.status_code == 400
    assert response.json()["error_code"] == "TRANSITION_NOT_ALLOWED"
    assert response.json()["details"]["from"] == "needs_review"

    response = await transition(client, invoice["id"], "archived")
    assert response.status_code == 422
    assert response.json()["error_code"] == "VALIDATION_FAILED"


async def test_allocation_error_envelope(client, cost_codes):
    invoice = await create_invoice(client, amount="1426.14")

    response = await client.patch(
        f"/v1/invoices/{invoice['id']}/allocations",
        json={
            "allocations": [
                {"cost_code_id": cost_codes["03100"].id, "amount": "1000.00"},
                {"cost_code_id": cost_codes["16100"].id, "amount": "500.00"},
            ],
            "performed_by": "accountant",
        }
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "ALLOCATION_INVALID"
    assert response.json()["details"]["rule"] == "over_allocated"

    summary = (await client.get(f"/v1/invoices/{invoice['id']}/allocations/summary")).json()
    assert summary["allocation_count"] == 0


async def test_lock_lifecycle(client, frozen_clock):
    response = await client.post(
        "/v1/locks/acquire", json={"entity_type": "invoice", "entity_id": 42, "locked_by": "alice"}
    )
    assert response.status_code == 200
    lock = response.json()["lock"]
    assert lock["entity_id"] == "42"
    assert response.json()["created"] is True

    response = await client.post(
        "/v1/locks/acquire", json={"entity_type": "invoice", "entity_id": "42", "locked_by": "bob"}
    )
    assert response.status_code == 409
    body = response.json()
    assert body["error_code"] == "LOCK_HELD"
    assert body["details"]["holder"] == "alice"
    assert body["details"]["expires_at"] == "2026-01-15T12:05:00"

    status = (await client.get("/v1/locks/check/invoice/42")).json()
    assert status["locked"] is True
    assert status["remaining_seconds"] == 300

    listing = (await client.get("/v1/locks")).json()
    assert listing["total"] == 1

    response = await client.request("DELETE", f"/v1/locks/{lock['id']}", json={"released_by": "bob"})
    assert response.json()["released"] is False

    response = await client.request("DELETE", f"/v1/locks/{lock['id']}", json={"released_by": "alice"})
    assert response.json()["released"] is True
    assert (await client.get("/v1/locks/check/invoice/42")).json()["locked"] is False


async def test_force_release_and_cleanup(client, frozen_clock):
    await client.post("/v1/locks/acquire", json={"entity_type": "invoice", "entity_id": "1", "locked_by": "alice"})
    await client.post("/v1/locks/acquire", json={"entity_type": "invoice", "entity_id": "2", "locked_by": "alice"})

    response = await client.post(
        "/v1/locks/force-release", json={"entity_type": "invoice", "entity_id": 1, "released_by": "admin"}
    )
    assert response.json()["previous_holder"] == "alice"

    frozen_clock.advance(minutes=10)
    response = await client.post("/v1/locks/cleanup")
    assert response.json()["removed"] == 1


async def test_locked_invoice_rejects_other_editors(client):
    invoice = await create_invoice(client)
    await client.post(
        "/v1/locks/acquire", json={"entity_type": "invoice", "entity_id": invoice["id"], "locked_by": "alice"}
    )

    response = await transition(client, invoice["id"], "denied", "bob")
    assert response.status_code == 409
    assert response.json()["error_code"] == "LOCK_HELD"

    response = await client.patch(f"/v1/invoices/{invoice['id']}", json={"notes": "x", "performed_by": "bob"})
    assert response.status_code == 409


async def test_undo_flow(client):
    invoice = await create_invoice(client)
    await transition(client, invoice["id"], "denied", reason="Duplicate")

    available = (await client.get(f"/v1/undo/available/invoice/{invoice['id']}")).json()
    assert available["available"] is True
    assert available["action_label"] == "Status change to denied"
    assert available["remaining_seconds"] == 30

    recent = (await client.get("/v1/undo/recent/pm")).json()
    assert recent["total"] == 1

    response = await client.post(f"/v1/undo/invoice/{invoice['id']}", json={"performed_by": "pm"})
    assert response.status_code == 200
    assert response.json()["undone_action"] == "status_change:denied"
    assert response.json()["invoice"]["status"] == "needs_review"

    response = await client.post(f"/v1/undo/invoice/{invoice['id']}", json={"performed_by": "pm"})
    assert response.status_code == 404
    assert response.json()["error_code"] == "UNDO_NOT_FOUND"


async def test_undo_expired_and_stale(client, frozen_clock):
    expired = await create_invoice(client)
    await transition(client, expired["id"], "denied")
    frozen_clock.advance(seconds=31)

    response = await client.post(f"/v1/undo/invoice/{expired['id']}", json={"performed_by": "pm"})
    assert response.status_code == 409
    assert response.json()["error_code"] == "UNDO_EXPIRED"

    split = await create_invoice(client, invoice_number="INV-901")
    body = (await client.post(
        f"/v1/invoices/{split['id']}/split",
        json={"splits": [{"amount": "600.00", "job_id": 1}, {"amount": "400.00", "job_id": 1}], "performed_by": "a"}
    )).json()
    await transition(client, body["children"][0]["id"], "denied")

    response = await client.post(f"/v1/undo/invoice/{split['id']}", json={"performed_by": "a"})
    assert response.status_code == 409
    assert response.json()["error_code"] == "UNDO_STALE"


async def test_split_family_and_unsplit(client):
    invoice = await create_invoice(client, invoice_number="INV-777")

    response = await client.post(
        f"/v1/invoices/{invoice['id']}/split",
        json={"splits": [{"amount": "700.00"}, {"amount": "300.00", "job_id": 2}], "performed_by": "a"}
    )
    assert response.status_code == 200
    children = response.json()["children"]
    assert [child["invoice_number"] for child in children] == ["INV-777-1", "INV-777-2"]

    family = (await client.get(f"/v1/invoices/{children[1]['id']}/family")).json()
    assert family["is_split"] is True
    assert family["parent"]["status"] == "split"
    assert family["parent"]["original_amount"] == 1000.0

    response = await client.post(
        f"/v1/invoices/{invoice['id']}/split",
        json={"splits": [{"amount": "500.00"}, {"amount": "500.00"}], "performed_by": "a"}
    )
    assert response.json()["error_code"] == "ALREADY_SPLIT"

    response = await client.post(f"/v1/invoices/{invoice['id']}/unsplit", json={"performed_by": "a"})
    assert response.json()["deleted_children"] == 2

    response = await client.get(f"/v1/invoices/{children[0]['id']}")
    assert response.status_code == 404


async def test_split_sum_mismatch(client):
    invoice = await create_invoice(client)

    response = await client.post(
        f"/v1/invoices/{invoice['id']}/split",
        json={"splits": [{"amount": "600.00"}, {"amount": "300.00"}], "performed_by": "a"}
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "SPLIT_SUM_MISMATCH"


async def test_change_order_link_required(client, cost_codes):
    invoice = await create_invoice(client, amount="500.00")
    await transition(client, invoice["id"], "ready_for_approval", "accountant")
    await client.patch(
        f"/v1/invoices/{invoice['id']}/allocations",
        json={"allocations": [{"cost_code_id": cost_codes["03100C"].id, "amount": "500.00"}], "performed_by": "accountant"}
    )

    response = await transition(client, invoice["id"], "approved")

    assert response.status_code == 400
    assert response.json()["error_code"] == "CHANGE_ORDER_LINK_REQUIRED"


async def test_edit_and_soft_delete(client):
    invoice = await create_invoice(client, job_id=None)

    response = await client.patch(
        f"/v1/invoices/{invoice['id']}", json={"job_id": 3, "performed_by": "accountant"}
    )
    assert response.status_code == 200
    assert response.json()["job_id"] == 3
    assert response.json()["review_flags"] == []

    response = await client.patch(
        f"/v1/invoices/{invoice['id']}",
        json={"notes": "x", "performed_by": "accountant", "expected_version": 1}
    )
    assert response.status_code == 409
    assert response.json()["error_code"] == "VERSION_CONFLICT"

    response = await client.request(
        "DELETE", f"/v1/invoices/{invoice['id']}", json={"performed_by": "accountant"}
    )
    assert response.json()["success"] is True
    assert (await client.get(f"/v1/invoices/{invoice['id']}")).status_code == 404


async def test_realtime_stats(client, event_bus):
    event_bus.subscribe()

    response = await client.get("/v1/realtime/stats")

    assert response.json()["subscribers"] == 1
    assert response.json()["backend"] == "memory"
