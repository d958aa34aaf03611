import sys
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from jobledger.core import database as db_module
from jobledger.core import settings as settings_module
from jobledger.services.invoice_workflow import InvoiceWorkflowService
from jobledger.services.notifications import NotificationBus

JOB = "JOB-1"
VENDOR = "V-1"
USER = "pm@example.com"


@pytest.fixture()
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("JOBLEDGER_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("JOBLEDGER_UNLOCK_USERS", raising=False)
    monkeypatch.delenv("JOBLEDGER_UNDO_WINDOW_SECONDS", raising=False)
    settings_module.reset_settings()
    db_module._DB_INSTANCE = None
    NotificationBus._instance = None
    db = db_module.get_db()
    db.initialize()
    yield db
    db_module._DB_INSTANCE = None
    NotificationBus._instance = None
    settings_module.reset_settings()


@pytest.fixture()
def job(db):
    """One job with cost codes, an approved CO, a PO that references it, and budget lines."""
    db.create_cost_code("01-100", "General Conditions", cost_code_id="CC-100")
    db.create_cost_code("03-200", "Concrete", cost_code_id="CC-200")
    db.create_cost_code("03-210C", "Concrete (change order work)", cost_code_id="CC-210C")
    db.create_cost_code("05-300C", "Steel (change order work)", cost_code_id="CC-300C")
    db.create_change_order({
        "id": "CO-1", "job_id": JOB, "change_order_number": "CO-001",
        "title": "Add footing", "amount": Decimal("5000.00"), "status": "approved",
    })
    db.create_change_order({
        "id": "CO-2", "job_id": JOB, "change_order_number": "CO-002",
        "title": "Rejected scope", "amount": Decimal("1000.00"), "status": "rejected",
    })
    db.create_purchase_order({
        "id": "PO-1", "job_id": JOB, "vendor_id": VENDOR, "po_number": "PO-100",
        "total_amount": Decimal("10000.00"),
        "line_items": [
            {"cost_code_id": "CC-200", "amount": Decimal("8000.00")},
            {"cost_code_id": "CC-210C", "amount": Decimal("2000.00"), "change_order_id": "CO-1"},
        ],
    })
    db.create_budget_line({"job_id": JOB, "cost_code_id": "CC-100", "budgeted_amount": Decimal("5000.00")})
    db.create_budget_line({"job_id": JOB, "cost_code_id": "CC-200", "budgeted_amount": Decimal("20000.00")})
    return {"job_id": JOB, "vendor_id": VENDOR, "po_id": "PO-1", "co_id": "CO-1"}


@pytest.fixture()
def workflow(db):
    return InvoiceWorkflowService(db=db)


@pytest.fixture()
def make_invoice(workflow, job):
    counter = {"n": 0}

    def _make(amount="1000.00", allocations=None, status="needs_review", **fields):
        counter["n"] += 1
        payload = {
            "job_id": JOB,
            "vendor_id": VENDOR,
            "invoice_number": f"INV-{1000 + counter['n']}",
            "invoice_date": "2026-01-15",
            "amount": amount,
            "status": status,
            "allocations": allocations if allocations is not None else [
                {"cost_code_id": "CC-100", "amount": amount},
            ],
        }
        payload.update(fields)
        return workflow.create_invoice(payload, performed_by=USER)["invoice"]

    return _make


@pytest.fixture()
def approved_invoice(workflow, make_invoice):
    def _approve(amount="1000.00", allocations=None, **fields):
        invoice = make_invoice(amount=amount, allocations=allocations, **fields)
        workflow.transition(invoice["id"], "ready_for_approval", USER)
        return workflow.approve(invoice["id"], USER).invoice

    return _approve
