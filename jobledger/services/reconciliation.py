"""
Reconciliation Engine

Recomputes the derived monetary totals of a job from their source records and
reports (optionally corrects) every stored value that drifted:

- draw.total_amount          = member invoice amounts + CO billings
- invoice.billed_amount      = draw allocations for the invoice
- invoice.paid_amount        = draw allocations in final draws
- budget_line.billed_amount  = allocations of in_draw / paid invoices, by cost code
- budget_line.paid_amount    = allocations of paid invoices, by cost code

Integrity problems that cannot be derived away (over-allocated invoices,
allocations without a cost code, draw members in the wrong status, budget
overruns) are reported as warnings and never corrected.

Running twice in write mode yields no corrections the second time.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from jobledger.core.database import get_db
from jobledger.services.draws import DRAFT, FINAL
from jobledger.services.invoice_state import BILLED_STATUSES, InvoiceStatus
from jobledger.services.logging import log_correction
from jobledger.services.money import ZERO, approx_equal, exceeds, format_amount, serialize, total

logger = logging.getLogger(__name__)

_BILLED = {s.value for s in BILLED_STATUSES}


@dataclass(frozen=True)
class Discrepancy:
    entity: str  # "draw" | "invoice" | "budget_line"
    entity_id: Optional[str]
    field: str
    stored: Decimal
    derived: Decimal
    cost_code_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return serialize({
            "entity": self.entity,
            "entity_id": self.entity_id,
            "field": self.field,
            "stored": self.stored,
            "derived": self.derived,
            "cost_code_id": self.cost_code_id,
        })


@dataclass(frozen=True)
class IntegrityWarning:
    kind: str
    entity: str
    entity_id: Optional[str]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "entity": self.entity, "entity_id": self.entity_id, "message": self.message}


@dataclass
class ReconciliationReport:
    job_id: str
    write: bool = False
    discrepancies: List[Discrepancy] = field(default_factory=list)
    warnings: List[IntegrityWarning] = field(default_factory=list)
    corrections_applied: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.discrepancies

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "write": self.write,
            "is_clean": self.is_clean,
            "corrections_applied": self.corrections_applied,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "warnings": [w.to_dict() for w in self.warnings],
        }


class ReconciliationEngine:
    def __init__(self, db=None):
        self.db = db or get_db()

    def reconcile_job(self, job_id: str, write: bool = False) -> ReconciliationReport:
        report = ReconciliationReport(job_id=job_id, write=write)
        invoices = self.db.list_invoices(job_id=job_id)
        self._check_draws(job_id, report)
        self._check_invoices(invoices, report)
        self._check_budget(job_id, report)

        if write and report.discrepancies:
            self._apply(job_id, report)

        logger.info(
            "Reconciled job %s: %s discrepancies, %s warnings%s",
            job_id, len(report.discrepancies), len(report.warnings),
            f", {report.corrections_applied} corrected" if write else "",
        )
        return report

    def reconcile_all(self, write: bool = False) -> List[ReconciliationReport]:
        return [self.reconcile_job(job_id, write=write) for job_id in self.db.list_job_ids()]

    def _check_draws(self, job_id: str, report: ReconciliationReport) -> None:
        for draw in self.db.list_draws(job_id):
            members = self.db.list_draw_invoices(draw["id"])
            billings = self.db.list_draw_co_billings(draw["id"])
            derived = total([m["amount"] for m in members] + [b["amount"] for b in billings])
            if not approx_equal(draw["total_amount"], derived):
                report.discrepancies.append(Discrepancy("draw", draw["id"], "total_amount", draw["total_amount"], derived))

            expected = InvoiceStatus.IN_DRAW.value if draw["status"] == DRAFT else InvoiceStatus.PAID.value
            for member in members:
                if member["status"] != expected:
                    report.warnings.append(IntegrityWarning(
                        "draw_member_status",
                        "invoice",
                        member["id"],
                        f"Invoice {member.get('invoice_number') or member['id']} is {member['status']} "
                        f"but belongs to {draw['status']} draw #{draw['draw_number']}",
                    ))

    def _check_invoices(self, invoices: List[Dict[str, Any]], report: ReconciliationReport) -> None:
        for invoice in invoices:
            draw_allocations = self.db.list_draw_allocations(invoice_id=invoice["id"])
            billed = total(a["amount"] for a in draw_allocations)
            paid = total(a["amount"] for a in draw_allocations if a["draw_status"] == FINAL)
            for field_name, derived in (("billed_amount", billed), ("paid_amount", paid)):
                if not approx_equal(invoice[field_name], derived):
                    report.discrepancies.append(
                        Discrepancy("invoice", invoice["id"], field_name, invoice[field_name], derived)
                    )

            allocations = self.db.list_allocations(invoice["id"])
            allocated = total(a["amount"] for a in allocations)
            if exceeds(allocated, invoice["amount"]):
                report.warnings.append(IntegrityWarning(
                    "over_allocated",
                    "invoice",
                    invoice["id"],
                    f"Allocations ({format_amount(allocated)}) exceed invoice amount ({format_amount(invoice['amount'])})",
                ))
            missing = [a for a in allocations if not a.get("cost_code_id")]
            if missing:
                report.warnings.append(IntegrityWarning(
                    "missing_cost_code",
                    "invoice",
                    invoice["id"],
                    f"{len(missing)} allocation(s) have no cost code",
                ))

    def _check_budget(self, job_id: str, report: ReconciliationReport) -> None:
        billed: Dict[str, Decimal] = {}
        paid: Dict[str, Decimal] = {}
        for allocation in self.db.list_job_allocations(job_id):
            code = allocation.get("cost_code_id")
            if not code or allocation.get("invoice_status") not in _BILLED:
                continue
            billed[code] = billed.get(code, ZERO) + allocation["amount"]
            if allocation["invoice_status"] == InvoiceStatus.PAID.value:
                paid[code] = paid.get(code, ZERO) + allocation["amount"]

        lines = {line["cost_code_id"]: line for line in self.db.list_budget_lines(job_id)}
        for code in sorted(set(lines) | set(billed)):
            line = lines.get(code)
            for field_name, derived_map in (("billed_amount", billed), ("paid_amount", paid)):
                derived = derived_map.get(code, ZERO)
                stored = line[field_name] if line else ZERO
                if not approx_equal(stored, derived):
                    report.discrepancies.append(Discrepancy(
                        "budget_line", line["id"] if line else None, field_name, stored, derived, cost_code_id=code,
                    ))
            budgeted = line["budgeted_amount"] if line else ZERO
            if line and budgeted > ZERO and exceeds(billed.get(code, ZERO), budgeted):
                report.warnings.append(IntegrityWarning(
                    "over_budget",
                    "budget_line",
                    line["id"],
                    f"Billed {format_amount(billed.get(code, ZERO))} exceeds budget {format_amount(budgeted)}",
                ))

    def _apply(self, job_id: str, report: ReconciliationReport) -> None:
        invoice_updates: Dict[str, Dict[str, Decimal]] = {}
        budget_updates: Dict[str, Dict[str, Decimal]] = {}
        new_budget_lines: Dict[str, Dict[str, Decimal]] = {}
        for d in report.discrepancies:
            if d.entity == "invoice":
                invoice_updates.setdefault(d.entity_id, {})[d.field] = d.derived
            elif d.entity == "budget_line" and d.entity_id:
                budget_updates.setdefault(d.entity_id, {})[d.field] = d.derived
            elif d.entity == "budget_line":
                new_budget_lines.setdefault(d.cost_code_id, {})[d.field] = d.derived

        with self.db.transaction() as cur:
            for d in report.discrepancies:
                if d.entity == "draw":
                    self.db.update_draw(d.entity_id, cur=cur, total_amount=d.derived)
            for invoice_id, fields in invoice_updates.items():
                self.db.update_invoice(invoice_id, cur=cur, **fields)
            for line_id, fields in budget_updates.items():
                self.db.update_budget_line(line_id, cur=cur, **fields)
            for cost_code_id, fields in new_budget_lines.items():
                self.db.create_budget_line({"job_id": job_id, "cost_code_id": cost_code_id, **fields}, cur=cur)

        for d in report.discrepancies:
            log_correction(job_id, d.entity, d.entity_id or d.cost_code_id, d.field, d.stored, d.derived)
        report.corrections_applied = len(report.discrepancies)


def get_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine()
