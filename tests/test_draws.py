from decimal import Decimal

import pytest

from jobledger.services.draws import DrawService
from jobledger.services.errors import NotFoundError, StateViolationError, ValidationError
from jobledger.services.reconciliation import ReconciliationEngine

USER = "pm@example.com"


@pytest.fixture()
def draws(db):
    return DrawService(db=db)


def _budget(db, cost_code_id):
    return {line["cost_code_id"]: line for line in db.list_budget_lines("JOB-1")}[cost_code_id]


def test_add_to_draw_creates_draft_and_bills_budget(db, workflow, draws, approved_invoice):
    invoice = approved_invoice(amount="1500.00", allocations=[
        {"cost_code_id": "CC-100", "amount": "1000.00"},
        {"cost_code_id": "CC-200", "amount": "500.00"},
    ])

    result = workflow.add_to_draw(invoice["id"], USER)

    assert result.invoice["status"] == "in_draw"
    assert result.invoice["billed_amount"] == Decimal("1500.00")
    detail = draws.get_draw_detail(result.invoice["draw_id"])
    assert detail["draw_number"] == 1
    assert detail["status"] == "draft"
    assert detail["total_amount"] == Decimal("1500.00")
    assert len(detail["allocations"]) == 2
    assert _budget(db, "CC-100")["billed_amount"] == Decimal("1000.00")
    assert _budget(db, "CC-200")["billed_amount"] == Decimal("500.00")


def test_invoices_share_the_draft_draw(workflow, approved_invoice):
    first = workflow.add_to_draw(approved_invoice()["id"], USER).invoice
    second = workflow.add_to_draw(approved_invoice(amount="250.00")["id"], USER).invoice
    assert first["draw_id"] == second["draw_id"]


def test_remove_from_draw_reverses_billing(db, workflow, draws, approved_invoice):
    invoice = approved_invoice()
    in_draw = workflow.add_to_draw(invoice["id"], USER).invoice

    back = workflow.remove_from_draw(invoice["id"], USER).invoice

    assert back["status"] == "approved"
    assert back["draw_id"] is None
    assert back["billed_amount"] == Decimal("0.00")
    assert draws.get_draw_detail(in_draw["draw_id"])["total_amount"] == Decimal("0.00")
    assert _budget(db, "CC-100")["billed_amount"] == Decimal("0.00")


def test_finalize_marks_members_paid(db, workflow, draws, approved_invoice):
    invoice = approved_invoice(amount="800.00")
    draw_id = workflow.add_to_draw(invoice["id"], USER).invoice["draw_id"]

    detail = draws.finalize_draw(draw_id, "controller@example.com")

    assert detail["status"] == "final"
    assert detail["paid_invoice_ids"] == [invoice["id"]]
    paid = db.get_invoice(invoice["id"])
    assert paid["status"] == "paid"
    assert paid["paid_amount"] == Decimal("800.00")
    assert _budget(db, "CC-100")["paid_amount"] == Decimal("800.00")
    assert [e["action"] for e in db.list_activity(invoice["id"])][-1] == "status_paid"

    with pytest.raises(StateViolationError):
        draws.finalize_draw(draw_id, USER)
    with pytest.raises(StateViolationError):
        workflow.remove_from_draw(invoice["id"], USER)


def test_next_approved_invoice_opens_a_new_draw(workflow, draws, approved_invoice):
    first = workflow.add_to_draw(approved_invoice()["id"], USER).invoice
    draws.finalize_draw(first["draw_id"], USER)

    second = workflow.add_to_draw(approved_invoice()["id"], USER).invoice

    assert second["draw_id"] != first["draw_id"]
    assert draws.get_draw_detail(second["draw_id"])["draw_number"] == 2


def test_empty_draw_cannot_be_finalized(db, workflow, draws, approved_invoice):
    invoice = approved_invoice()
    draw_id = workflow.add_to_draw(invoice["id"], USER).invoice["draw_id"]
    workflow.remove_from_draw(invoice["id"], USER)

    with pytest.raises(ValidationError):
        draws.finalize_draw(draw_id, USER)


def test_change_order_billing_adds_to_draw_total(db, workflow, draws, approved_invoice):
    draw_id = workflow.add_to_draw(approved_invoice(amount="1000.00")["id"], USER).invoice["draw_id"]

    draws.add_change_order_billing(draw_id, "CO-1", "2500.00")

    assert draws.get_draw_detail(draw_id)["total_amount"] == Decimal("3500.00")
    with pytest.raises(ValidationError):
        draws.add_change_order_billing(draw_id, "CO-2", "100.00")
    with pytest.raises(NotFoundError):
        draws.add_change_order_billing(draw_id, "CO-404", "100.00")


def test_amount_edit_on_unlocked_in_draw_invoice_updates_draw_total(db, workflow, draws, approved_invoice):
    in_draw = workflow.add_to_draw(approved_invoice(amount="1000.00")["id"], USER).invoice

    saved = workflow.save_changes(
        in_draw["id"], USER, expected_version=in_draw["version"], fields={"amount": "1500.00"}, unlock=True,
    )

    assert saved.invoice["amount"] == Decimal("1500.00")
    assert draws.get_draw_detail(in_draw["draw_id"])["total_amount"] == Decimal("1500.00")
    assert ReconciliationEngine(db=db).reconcile_job("JOB-1").is_clean

    workflow.undo(saved.undo.id, USER)

    assert draws.get_draw_detail(in_draw["draw_id"])["total_amount"] == Decimal("1000.00")
    assert ReconciliationEngine(db=db).reconcile_job("JOB-1").is_clean


def test_change_order_billing_rolls_back_with_its_total(db, workflow, draws, approved_invoice, monkeypatch):
    draw_id = workflow.add_to_draw(approved_invoice(amount="1000.00")["id"], USER).invoice["draw_id"]

    def fail(cur, draw_id):
        raise RuntimeError("total update failed")

    monkeypatch.setattr(draws, "recompute_total", fail)

    with pytest.raises(RuntimeError):
        draws.add_change_order_billing(draw_id, "CO-1", "2500.00")

    assert db.list_draw_co_billings(draw_id) == []
    assert draws.get_draw_detail(draw_id)["total_amount"] == Decimal("1000.00")
