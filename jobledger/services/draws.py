"""
Payment draws.

A job has at most one draft draw at a time; approved invoices moving to
in_draw join it (creating it when missing). Joining writes one draw
allocation per invoice allocation, which is what billed_amount is derived
from. Finalizing a draw makes it immutable and marks its in_draw invoices
paid.

Functions taking ``cur`` run inside the caller's transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from jobledger.core.database import get_db
from jobledger.services.errors import NotFoundError, StateViolationError, ValidationError
from jobledger.services.invoice_state import InvoiceStatus
from jobledger.services.money import ZERO, exceeds, parse_amount, quantize, total

logger = logging.getLogger(__name__)

DRAFT = "draft"
FINAL = "final"


class DrawService:
    def __init__(self, db=None):
        self.db = db or get_db()

    # ------------------------------------------------------------------
    # Inside an open transaction
    # ------------------------------------------------------------------

    def get_or_create_draft_draw(self, cur, job_id: str) -> Dict[str, Any]:
        draft = self.db.get_draft_draw(cur, job_id)
        if draft:
            return draft
        draw = self.db.create_draw(cur, job_id)
        logger.info("Created draft draw #%s for job %s", draw["draw_number"], job_id)
        return draw

    def recompute_total(self, cur, draw_id: str) -> Decimal:
        members = self.db.list_draw_invoices(draw_id, cur=cur)
        billings = self.db.list_draw_co_billings(draw_id, cur=cur)
        draw_total = total([m["amount"] for m in members] + [b["amount"] for b in billings])
        self.db.update_draw(draw_id, cur=cur, total_amount=draw_total)
        return draw_total

    def billed_amount(self, cur, invoice_id: str) -> Decimal:
        return total(a["amount"] for a in self.db.list_draw_allocations(invoice_id=invoice_id, cur=cur))

    def _apply_budget(self, cur, job_id: str, amounts: Dict[str, Decimal], column: str, sign: int) -> None:
        lines = {
            line["cost_code_id"]: line
            for line in self.db.list_budget_lines(job_id, cur=cur)
        }
        for cost_code_id, amount in amounts.items():
            delta = quantize(amount * sign)
            line = lines.get(cost_code_id)
            if line is None:
                if sign < 0:
                    continue
                self.db.create_budget_line({"job_id": job_id, "cost_code_id": cost_code_id, column: delta}, cur=cur)
                continue
            self.db.update_budget_line(line["id"], cur=cur, **{column: max(ZERO, line[column] + delta)})

    @staticmethod
    def _by_cost_code(allocations: Iterable[Dict[str, Any]]) -> Dict[str, Decimal]:
        amounts: Dict[str, Decimal] = {}
        for allocation in allocations:
            code = allocation.get("cost_code_id")
            if code:
                amounts[code] = amounts.get(code, ZERO) + allocation["amount"]
        return amounts

    def add_invoice(self, cur, invoice: Dict[str, Any], added_by: Optional[str]) -> Dict[str, Any]:
        """Add an approved invoice to its job's draft draw. Returns the draw."""
        if not invoice.get("job_id"):
            raise ValidationError(
                [{"requirement": "job_id", "message": "Invoice must be assigned to a job"}],
                message="Invoice cannot be added to a draw",
            )
        draw = self.get_or_create_draft_draw(cur, invoice["job_id"])
        self.db.add_draw_invoice(cur, draw["id"], invoice["id"], added_by)
        allocations = self.db.list_allocations(invoice["id"], cur=cur)
        for cost_code_id, amount in self._by_cost_code(allocations).items():
            self.db.add_draw_allocation(cur, draw["id"], invoice["id"], cost_code_id, amount)
        self._apply_budget(cur, invoice["job_id"], self._by_cost_code(allocations), "billed_amount", 1)
        self.recompute_total(cur, draw["id"])
        logger.info("Invoice %s added to draw #%s", invoice["id"], draw["draw_number"])
        return draw

    def remove_invoice(self, cur, invoice: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        draw_id = invoice.get("draw_id")
        if not draw_id:
            return None
        draw = self.db.get_draw(draw_id, cur=cur)
        if draw is None:
            return None
        if draw["status"] != DRAFT:
            raise StateViolationError(
                f"Draw #{draw['draw_number']} is final; its invoices cannot be removed",
                current_status=invoice.get("status"),
            )
        allocations = self.db.list_allocations(invoice["id"], cur=cur)
        self.db.remove_draw_invoice(cur, draw_id, invoice["id"])
        self._apply_budget(cur, invoice["job_id"], self._by_cost_code(allocations), "billed_amount", -1)
        self.recompute_total(cur, draw_id)
        logger.info("Invoice %s removed from draw #%s", invoice["id"], draw["draw_number"])
        return draw

    # ------------------------------------------------------------------
    # Standalone operations
    # ------------------------------------------------------------------

    def get_draw_detail(self, draw_id: str) -> Dict[str, Any]:
        draw = self.db.get_draw(draw_id)
        if not draw:
            raise NotFoundError("draw", draw_id)
        draw["invoices"] = self.db.list_draw_invoices(draw_id)
        draw["allocations"] = self.db.list_draw_allocations(draw_id=draw_id)
        draw["change_order_billings"] = self.db.list_draw_co_billings(draw_id)
        return draw

    def list_draws(self, job_id: str) -> List[Dict[str, Any]]:
        return self.db.list_draws(job_id)

    def add_change_order_billing(self, draw_id: str, change_order_id: str, amount: Any) -> Dict[str, Any]:
        draw = self.db.get_draw(draw_id)
        if not draw:
            raise NotFoundError("draw", draw_id)
        if draw["status"] != DRAFT:
            raise StateViolationError(f"Draw #{draw['draw_number']} is final")
        co = self.db.get_change_order(change_order_id)
        if not co or co["job_id"] != draw["job_id"]:
            raise NotFoundError("change_order", change_order_id)
        if co["status"] != "approved":
            raise ValidationError(
                [{"requirement": "change_order_status", "message": "Only approved change orders can be billed"}],
                message="Change order cannot be billed",
            )
        value = parse_amount(amount)
        if not exceeds(value, ZERO):
            raise ValidationError(
                [{"field": "amount", "message": "Billing amount must be greater than zero"}],
                message="Invalid change order billing",
            )
        with self.db.transaction() as cur:
            billing = self.db.add_draw_co_billing(cur, draw_id, change_order_id, value)
            self.recompute_total(cur, draw_id)
        return billing

    def finalize_draw(self, draw_id: str, performed_by: str) -> Dict[str, Any]:
        """Mark the draw final and its in_draw invoices paid."""
        now = datetime.now(timezone.utc).isoformat()
        paid_ids: List[str] = []
        with self.db.transaction() as cur:
            draw = self.db.get_draw(draw_id, cur=cur)
            if not draw:
                raise NotFoundError("draw", draw_id)
            if draw["status"] != DRAFT:
                raise StateViolationError(f"Draw #{draw['draw_number']} is already final")
            members = self.db.list_draw_invoices(draw_id, cur=cur)
            if not members:
                raise ValidationError(
                    [{"requirement": "draw_invoices", "message": "Draw has no invoices"}],
                    message="Empty draws cannot be finalized",
                )
            self.db.update_draw(draw_id, cur=cur, status=FINAL, finalized_at=now, finalized_by=performed_by)
            for invoice in members:
                if invoice["status"] != InvoiceStatus.IN_DRAW.value:
                    logger.warning(
                        "Draw %s member %s is %s, not in_draw; leaving status unchanged",
                        draw_id, invoice["id"], invoice["status"],
                    )
                    continue
                paid = total(
                    a["amount"]
                    for a in self.db.list_draw_allocations(invoice_id=invoice["id"], cur=cur)
                    if a["draw_status"] == FINAL
                )
                self.db.update_invoice(
                    invoice["id"],
                    expected_version=invoice["version"],
                    cur=cur,
                    status=InvoiceStatus.PAID.value,
                    paid_amount=paid,
                )
                allocations = self.db.list_allocations(invoice["id"], cur=cur)
                self._apply_budget(cur, draw["job_id"], self._by_cost_code(allocations), "paid_amount", 1)
                self.db.append_activity({
                    "invoice_id": invoice["id"],
                    "action": "status_paid",
                    "performed_by": performed_by,
                    "details": {"draw_id": draw_id, "draw_number": draw["draw_number"], "paid_amount": paid},
                }, cur=cur)
                paid_ids.append(invoice["id"])
            self.recompute_total(cur, draw_id)
        logger.info("Finalized draw %s; %s invoice(s) marked paid", draw_id, len(paid_ids))
        detail = self.get_draw_detail(draw_id)
        detail["paid_invoice_ids"] = paid_ids
        return detail


def get_draw_service() -> DrawService:
    return DrawService()
