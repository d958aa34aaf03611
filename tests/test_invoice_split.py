from decimal import Decimal

import pytest

from jobledger.services.errors import LockedError, StateViolationError, ValidationError
from jobledger.services.invoice_split import InvoiceSplitService
from jobledger.services.locking import INVOICE

USER = "pm@example.com"


@pytest.fixture()
def splitter(db):
    return InvoiceSplitService(db=db)


def test_split_creates_children_that_sum_to_parent(db, splitter, make_invoice):
    invoice = make_invoice(amount="1000.00", invoice_number="V-500")

    result = splitter.split(invoice["id"], [
        {"job_id": "JOB-1", "amount": "600.00"},
        {"job_id": "JOB-2", "amount": "$400.00", "notes": "Second site"},
    ], USER)

    assert result.parent["status"] == "split"
    assert result.parent["is_split_parent"] is True
    assert [c["invoice_number"] for c in result.children] == ["V-500-1", "V-500-2"]
    assert [c["job_id"] for c in result.children] == ["JOB-1", "JOB-2"]
    assert all(c["status"] == "needs_review" for c in result.children)
    assert sum(c["amount"] for c in result.children) == Decimal("1000.00")
    assert result.children[1]["parent_invoice_id"] == invoice["id"]

    family = splitter.family(result.children[0]["id"])
    assert family["balanced"] is True
    assert len(family["children"]) == 2
    assert [e["action"] for e in db.list_activity(invoice["id"])][-1] == "split"


def test_split_amounts_must_match(db, splitter, make_invoice):
    invoice = make_invoice(amount="1000.00")

    with pytest.raises(ValidationError) as exc_info:
        splitter.split(invoice["id"], [
            {"job_id": "JOB-1", "amount": "600.00"},
            {"job_id": "JOB-2", "amount": "300.00"},
        ], USER)

    assert exc_info.value.requirements == {"split_total"}
    assert db.get_invoice(invoice["id"])["status"] == "needs_review"
    assert db.list_invoices(parent_invoice_id=invoice["id"]) == []


def test_split_entry_validation(splitter, make_invoice):
    invoice = make_invoice(amount="1000.00")
    with pytest.raises(ValidationError) as exc_info:
        splitter.split(invoice["id"], [{"job_id": "", "amount": "0"}], USER)
    assert exc_info.value.requirements >= {"splits", "job_id", "amount"}


def test_split_blocked_for_locked_status_and_other_editor(workflow, splitter, make_invoice, approved_invoice):
    approved = approved_invoice()
    with pytest.raises(StateViolationError):
        splitter.split(approved["id"], [{"job_id": "JOB-1", "amount": "500"}, {"job_id": "JOB-2", "amount": "500"}], USER)

    invoice = make_invoice(amount="100.00")
    workflow.locks.acquire(INVOICE, invoice["id"], "alice")
    with pytest.raises(LockedError):
        splitter.split(invoice["id"], [{"job_id": "JOB-1", "amount": "50"}, {"job_id": "JOB-2", "amount": "50"}], "bob")


def test_child_cannot_be_split_again(splitter, make_invoice):
    invoice = make_invoice(amount="100.00")
    result = splitter.split(invoice["id"], [{"job_id": "JOB-1", "amount": "50"}, {"job_id": "JOB-2", "amount": "50"}], USER)

    with pytest.raises(StateViolationError):
        splitter.split(result.children[0]["id"], [{"job_id": "JOB-1", "amount": "25"}, {"job_id": "JOB-2", "amount": "25"}], USER)


def test_unsplit_restores_parent(db, splitter, make_invoice):
    invoice = make_invoice(amount="100.00")
    result = splitter.split(invoice["id"], [{"job_id": "JOB-1", "amount": "50"}, {"job_id": "JOB-2", "amount": "50"}], USER)

    restored = splitter.unsplit(invoice["id"], USER)

    assert restored["status"] == "needs_review"
    assert restored["is_split_parent"] is False
    assert db.list_invoices(parent_invoice_id=invoice["id"]) == []
    assert db.get_invoice(result.children[0]["id"]) is None
    assert db.get_invoice(result.children[0]["id"], include_deleted=True)["deleted_at"]


def test_unsplit_blocked_once_a_child_is_approved(db, workflow, splitter, make_invoice):
    invoice = make_invoice(amount="100.00")
    result = splitter.split(invoice["id"], [{"job_id": "JOB-1", "amount": "60"}, {"job_id": "JOB-1", "amount": "40"}], USER)
    child = result.children[0]
    workflow.save_changes(
        child["id"], USER, expected_version=child["version"],
        allocations=[{"cost_code_id": "CC-100", "amount": "60"}],
        target_status="ready_for_approval",
    )
    workflow.approve(child["id"], USER)

    with pytest.raises(StateViolationError) as exc_info:
        splitter.unsplit(invoice["id"], USER)
    assert child["invoice_number"] in exc_info.value.message
    assert db.get_invoice(invoice["id"])["status"] == "split"


def test_unsplit_requires_split_parent(splitter, make_invoice):
    invoice = make_invoice()
    with pytest.raises(StateViolationError):
        splitter.unsplit(invoice["id"], USER)
