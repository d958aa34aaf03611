from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from jobledger.services.errors import NotFoundError, UndoExpiredError, VersionConflictError
from jobledger.services.invoice_workflow import InvoiceWorkflowService
from jobledger.services.undo import UndoService

USER = "pm@example.com"


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def test_undo_restores_previous_fields(db, workflow, make_invoice):
    invoice = make_invoice(notes="original")
    saved = workflow.save_changes(invoice["id"], USER, expected_version=1, fields={"notes": "changed"})
    assert saved.undo.remaining_ms == 30000

    restored = workflow.undo(saved.undo.id, USER)

    assert restored["notes"] == "original"
    assert restored["version"] == 3
    last = db.list_activity(invoice["id"])[-1]
    assert last["action"] == "undone"
    assert last["details"]["undone_action"] == "edited"


def test_undo_restores_allocations(db, workflow, make_invoice):
    invoice = make_invoice(amount="1000.00")
    saved = workflow.save_changes(
        invoice["id"], USER, expected_version=1,
        allocations=[
            {"cost_code_id": "CC-100", "amount": "250.00"},
            {"cost_code_id": "CC-200", "amount": "750.00"},
        ],
    )

    workflow.undo(saved.undo.id, USER)

    restored = db.list_allocations(invoice["id"])
    assert [(a["cost_code_id"], a["amount"]) for a in restored] == [("CC-100", Decimal("1000.00"))]


def test_undo_add_to_draw_reverses_billing(db, workflow, approved_invoice):
    invoice = approved_invoice()
    result = workflow.add_to_draw(invoice["id"], USER)
    draw_id = result.invoice["draw_id"]

    restored = workflow.undo(result.undo.id, USER)

    assert restored["status"] == "approved"
    assert restored["draw_id"] is None
    assert restored["billed_amount"] == Decimal("0.00")
    assert db.list_draw_invoices(draw_id) == []
    line = {l["cost_code_id"]: l for l in db.list_budget_lines("JOB-1")}["CC-100"]
    assert line["billed_amount"] == Decimal("0.00")


def test_undo_is_single_use(workflow, make_invoice):
    invoice = make_invoice()
    saved = workflow.save_changes(invoice["id"], USER, expected_version=1, fields={"notes": "x"})
    workflow.undo(saved.undo.id, USER)

    with pytest.raises(UndoExpiredError):
        workflow.undo(saved.undo.id, USER)


def test_only_latest_undo_is_valid(workflow, make_invoice):
    invoice = make_invoice()
    first = workflow.save_changes(invoice["id"], USER, expected_version=1, fields={"notes": "one"})
    second = workflow.save_changes(invoice["id"], USER, expected_version=2, fields={"notes": "two"})

    with pytest.raises(UndoExpiredError):
        workflow.undo(first.undo.id, USER)
    assert workflow.undo(second.undo.id, USER)["notes"] == "one"


def test_undo_expires_after_window(db, make_invoice):
    clock = FakeClock()
    workflow = InvoiceWorkflowService(db=db, undo=UndoService(db, window_seconds=30, clock=clock))
    invoice = make_invoice()
    saved = workflow.save_changes(invoice["id"], USER, expected_version=1, fields={"notes": "x"})

    clock.advance(31)

    with pytest.raises(UndoExpiredError):
        workflow.undo(saved.undo.id, USER)
    assert db.get_invoice(invoice["id"])["notes"] == "x"


def test_undo_never_clobbers_a_later_edit(db, workflow, make_invoice):
    invoice = make_invoice()
    saved = workflow.save_changes(invoice["id"], USER, expected_version=1, fields={"notes": "mine"})
    db.update_invoice(invoice["id"], expected_version=2, notes="someone else")

    with pytest.raises(VersionConflictError):
        workflow.undo(saved.undo.id, USER)
    assert db.get_invoice(invoice["id"])["notes"] == "someone else"


def test_unknown_undo_id(workflow):
    with pytest.raises(NotFoundError):
        workflow.undo("UND-missing", USER)
