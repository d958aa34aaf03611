"""
Tests for API Endpoints

Tests the FastAPI endpoints for the JobLedger API against a throwaway store.
"""

import pytest
from fastapi.testclient import TestClient

from main import app

USER = "pm@example.com"


@pytest.fixture()
def client(db, job):
    return TestClient(app)


def _create(client, amount="1500.00", allocations=None, **fields):
    payload = {
        "job_id": "JOB-1",
        "vendor_id": "V-1",
        "invoice_number": fields.pop("invoice_number", "API-1"),
        "invoice_date": "2026-02-01",
        "amount": amount,
        "status": "needs_review",
        "performed_by": USER,
        "allocations": allocations if allocations is not None else [{"cost_code_id": "CC-100", "amount": amount}],
    }
    payload.update(fields)
    response = client.post("/api/invoices", json=payload)
    assert response.status_code == 200, response.text
    return response.json()["invoice"]


def _transition(client, invoice_id, target, **extra):
    return client.post(
        f"/api/invoices/{invoice_id}/transition",
        json={"performed_by": USER, "target_status": target, **extra},
    )


class TestHealthEndpoints:
    """Test health check endpoints."""

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"] == "ok"


class TestInvoiceEndpoints:
    """Test invoice intake, reads and saves."""

    def test_create_invoice_serializes_money_as_strings(self, client):
        response = client.post("/api/invoices", json={
            "job_id": "JOB-1",
            "amount": "$1,500.00",
            "performed_by": USER,
            "status": "needs_review",
            "allocations": [{"cost_code_id": "CC-100", "amount": "1000"}],
            "hints": [{"field_name": "vendor_id", "suggested_value": "V-3", "confidence": 0.9}],
        })

        assert response.status_code == 200
        data = response.json()
        assert data["invoice"]["amount"] == "1500.00"
        assert data["invoice"]["vendor_id"] == "V-3"
        assert data["allocations"][0]["amount"] == "1000.00"
        assert data["summary"]["remaining"] == "500.00"

    def test_unknown_fields_are_rejected(self, client):
        response = client.post("/api/invoices", json={"job_id": "JOB-1", "colour": "red"})
        assert response.status_code == 422

    def test_get_and_list(self, client):
        invoice = _create(client)

        detail = client.get(f"/api/invoices/{invoice['id']}")
        assert detail.status_code == 200
        assert detail.json()["invoice"]["invoice_number"] == "API-1"

        listing = client.get("/api/invoices", params={"job_id": "JOB-1", "status": "needs_review"})
        assert listing.json()["count"] == 1

    def test_unknown_invoice_is_404(self, client):
        response = client.get("/api/invoices/INV-missing")
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    def test_stale_save_is_a_conflict(self, client):
        invoice = _create(client)
        first = client.put(f"/api/invoices/{invoice['id']}", json={
            "performed_by": USER, "expected_version": 1, "fields": {"notes": "first"},
        })
        assert first.status_code == 200
        assert first.json()["invoice"]["version"] == 2

        stale = client.put(f"/api/invoices/{invoice['id']}", json={
            "performed_by": "other@example.com", "expected_version": 1, "fields": {"notes": "second"},
        })

        assert stale.status_code == 409
        body = stale.json()
        assert body["error"] == "VERSION_CONFLICT"
        assert body["context"]["current_version"] == 2

    def test_save_requires_performed_by(self, client):
        invoice = _create(client)
        response = client.put(f"/api/invoices/{invoice['id']}", json={"expected_version": 1})
        assert response.status_code == 422

    def test_activity_log(self, client):
        invoice = _create(client)
        _transition(client, invoice["id"], "ready_for_approval")

        events = client.get(f"/api/invoices/{invoice['id']}/activity").json()["events"]

        assert [e["action"] for e in events] == ["created", "status_ready_for_approval"]


class TestTransitionEndpoints:
    """Test status transitions over HTTP."""

    def test_missing_requirements_are_listed(self, client):
        invoice = _create(client, allocations=[])

        response = _transition(client, invoice["id"], "ready_for_approval")

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        unmet = {e.get("requirement") or e.get("field") for e in body["context"]["errors"]}
        assert "allocations" in unmet

    def test_invalid_transition(self, client):
        invoice = _create(client)
        response = _transition(client, invoice["id"], "approved")
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_TRANSITION"

    def test_po_overage_needs_override(self, client):
        allocation = [{"cost_code_id": "CC-200", "amount": "12000.00", "po_id": "PO-1"}]
        invoice = _create(client, amount="12000.00", allocations=allocation)
        _transition(client, invoice["id"], "ready_for_approval")

        blocked = _transition(client, invoice["id"], "approved")
        assert blocked.status_code == 400
        assert blocked.json()["error"] == "PO_OVERAGE"
        assert blocked.json()["context"]["overage_amount"] == "2000.00"

        approved = _transition(client, invoice["id"], "approved", override_po_overage=True)
        assert approved.status_code == 200
        assert approved.json()["warnings"][0]["type"] == "po_overage_override"

    def test_transition_then_undo(self, client):
        invoice = _create(client)
        moved = _transition(client, invoice["id"], "ready_for_approval").json()
        undo_id = moved["undo"]["id"]

        response = client.post(f"/api/undo/{undo_id}", json={"performed_by": USER})
        assert response.status_code == 200
        assert response.json()["invoice"]["status"] == "needs_review"

        again = client.post(f"/api/undo/{undo_id}", json={"performed_by": USER})
        assert again.status_code == 409
        assert again.json()["error"] == "UNDO_EXPIRED"

    def test_close_out_reasons(self, client):
        reasons = client.get("/api/invoices/close-out-reasons").json()["reasons"]
        assert "Vendor credit issued" in reasons
        assert "Other" in reasons


class TestAllocationEndpoints:
    """Test allocation previews and funding sources."""

    def test_balance_preview_fills_remaining(self, client):
        invoice = _create(client)

        response = client.post(f"/api/invoices/{invoice['id']}/allocations/balance", json={
            "operation": "fill_remaining",
            "index": 1,
            "allocations": [
                {"cost_code_id": "CC-100", "amount": "400"},
                {"cost_code_id": "CC-200"},
            ],
        })

        assert response.status_code == 200
        data = response.json()
        assert [a["amount"] for a in data["allocations"]] == ["400.00", "1100.00"]
        assert data["summary"]["status"] == "fully_allocated"

    def test_balance_split_evenly_needs_two_lines(self, client):
        invoice = _create(client)
        response = client.post(f"/api/invoices/{invoice['id']}/allocations/balance", json={
            "operation": "split_evenly",
            "allocations": [{"cost_code_id": "CC-100", "amount": "1"}],
        })
        assert response.status_code == 400

    def test_funding_sources(self, client):
        response = client.get("/api/jobs/JOB-1/funding-sources")

        assert response.status_code == 200
        data = response.json()
        assert data["purchase_orders"][0]["remaining"] == "10000.00"
        assert {co["id"]: co["selectable"] for co in data["change_orders"]} == {"CO-1": True, "CO-2": False}

    def test_funding_sources_preview(self, client):
        response = client.post("/api/jobs/JOB-1/funding-sources/preview", json={
            "allocations": [{"cost_code_id": "CC-200", "amount": "$2,500", "po_id": "PO-1"}],
        })
        assert response.json()["purchase_orders"][0]["remaining_after_edit"] == "7500.00"


class TestLockEndpoints:
    """Test edit locks."""

    def test_lock_lifecycle(self, client):
        acquired = client.post("/api/locks/invoice/INV-9", json={"holder": "alice"})
        assert acquired.status_code == 200
        assert acquired.json()["lock"]["locked_by"] == "alice"

        refused = client.post("/api/locks/invoice/INV-9", json={"holder": "bob"})
        assert refused.status_code == 409
        assert refused.json()["context"]["locked_by"] == "alice"

        assert client.delete("/api/locks/invoice/INV-9", params={"holder": "bob"}).status_code == 409
        released = client.delete("/api/locks/invoice/INV-9", params={"holder": "alice"})
        assert released.json() == {"released": True}
        assert client.get("/api/locks/invoice/INV-9").json()["locked"] is False

    def test_force_release(self, client):
        client.post("/api/locks/invoice/INV-9", json={"holder": "alice"})
        response = client.post("/api/locks/invoice/INV-9/force-release", json={"admin": "controller"})
        assert response.json() == {"released": True}
        assert client.get("/api/locks").json()["count"] == 0


class TestDrawAndReconciliationEndpoints:
    """Test draws and reconciliation over HTTP."""

    def _approved_in_draw(self, client):
        invoice = _create(client)
        _transition(client, invoice["id"], "ready_for_approval")
        _transition(client, invoice["id"], "approved")
        moved = _transition(client, invoice["id"], "in_draw")
        assert moved.status_code == 200, moved.text
        return moved.json()["invoice"]

    def test_finalize_draw(self, client):
        invoice = self._approved_in_draw(client)

        draws = client.get("/api/draws", params={"job_id": "JOB-1"}).json()
        assert draws["count"] == 1
        assert draws["draws"][0]["total_amount"] == "1500.00"

        billing = client.post(f"/api/draws/{invoice['draw_id']}/change-order-billings", json={
            "change_order_id": "CO-1", "amount": "500",
        })
        assert billing.json()["draw"]["total_amount"] == "2000.00"

        final = client.post(f"/api/draws/{invoice['draw_id']}/finalize", json={"performed_by": USER})
        assert final.status_code == 200
        assert final.json()["status"] == "final"
        assert client.get(f"/api/invoices/{invoice['id']}").json()["invoice"]["status"] == "paid"

    def test_reconcile_job_is_clean(self, client):
        self._approved_in_draw(client)

        report = client.post("/api/reconciliation/jobs/JOB-1").json()

        assert report["is_clean"] is True
        assert report["write"] is False

    def test_reconcile_all(self, client):
        self._approved_in_draw(client)
        response = client.post("/api/reconciliation/jobs", params={"write": "true"})
        data = response.json()
        assert data["jobs"] == 1
        assert data["discrepancies"] == 0
