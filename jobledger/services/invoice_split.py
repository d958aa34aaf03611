"""Split one vendor invoice across jobs, and reverse it while no child has settled."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from jobledger.core.database import get_db
from jobledger.services.errors import InvalidAmount, StateViolationError
from jobledger.services.invoice_state import (
    SETTLED_STATUSES,
    InvoiceStatus,
    Requirement,
    assert_valid_transition,
    coerce_status,
    is_editable,
    raise_if_unmet,
)
from jobledger.services.locking import INVOICE, LockManager
from jobledger.services.money import ZERO, approx_equal, format_amount, parse_amount, serialize, to_decimal, total
from jobledger.services.notifications import get_notification_bus, notify_failures

logger = logging.getLogger(__name__)

_SETTLED = {s.value for s in SETTLED_STATUSES}


@dataclass
class SplitResult:
    parent: Dict[str, Any]
    children: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return serialize({"parent": self.parent, "children": self.children})


class InvoiceSplitService:
    def __init__(self, db=None, locks: Optional[LockManager] = None, notifier=None):
        self.db = db or get_db()
        self.locks = locks or LockManager(self.db)
        self.notifier = notifier or get_notification_bus()

    def split(
        self,
        invoice_id: str,
        entries: List[Dict[str, Any]],
        performed_by: str,
        expected_version: Optional[int] = None,
    ) -> SplitResult:
        """
        Replace one invoice with N children, each with its own job and amount.

        entries: [{"job_id", "amount", "notes"?}, ...]; amounts must add up to
        the invoice amount.
        """
        with notify_failures(self.notifier):
            return self._split(invoice_id, entries, performed_by, expected_version)

    def _split(self, invoice_id, entries, performed_by, expected_version) -> SplitResult:
        invoice = self.db.require_invoice(invoice_id)
        status = coerce_status(invoice["status"])
        if invoice.get("is_split_parent") or status == InvoiceStatus.SPLIT:
            raise StateViolationError("Invoice is already split", current_status=status.value)
        if invoice.get("parent_invoice_id"):
            raise StateViolationError("A split invoice cannot be split again", current_status=status.value)
        if not is_editable(status):
            raise StateViolationError(
                f"Invoice is {status.value}; only invoices under review can be split",
                current_status=status.value,
            )
        assert_valid_transition(status, InvoiceStatus.SPLIT)
        self.locks.require_lock(INVOICE, invoice_id, performed_by)

        unmet: List[Requirement] = []
        if len(entries) < 2:
            unmet.append(Requirement("splits", "At least two splits are required"))
        parsed = []
        for position, entry in enumerate(entries, start=1):
            if not str(entry.get("job_id") or "").strip():
                unmet.append(Requirement("job_id", f"Split {position} needs a job"))
            try:
                amount = parse_amount(entry.get("amount"))
            except InvalidAmount:
                unmet.append(Requirement("amount", f"Split {position} has an invalid amount"))
                continue
            if amount <= ZERO:
                unmet.append(Requirement("amount", f"Split {position} amount must be greater than zero"))
            parsed.append({"job_id": entry.get("job_id"), "amount": amount, "notes": entry.get("notes")})

        split_total = total(p["amount"] for p in parsed)
        amount = to_decimal(invoice.get("amount"))
        if len(parsed) == len(entries) and not approx_equal(split_total, amount):
            unmet.append(Requirement(
                "split_total",
                f"Split amounts ({format_amount(split_total)}) must equal the invoice amount ({format_amount(amount)})",
            ))
        raise_if_unmet(unmet, "Invoice cannot be split")

        base_number = invoice.get("invoice_number") or invoice_id
        children: List[Dict[str, Any]] = []
        with self.db.transaction() as cur:
            parent = self.db.update_invoice(
                invoice_id,
                expected_version if expected_version is not None else invoice["version"],
                cur=cur,
                status=InvoiceStatus.SPLIT.value,
                is_split_parent=True,
            )
            for index, entry in enumerate(parsed, start=1):
                child = self.db.create_invoice({
                    "job_id": entry["job_id"],
                    "vendor_id": invoice.get("vendor_id"),
                    "amount": entry["amount"],
                    "invoice_number": f"{base_number}-{index}",
                    "invoice_date": invoice.get("invoice_date"),
                    "due_date": invoice.get("due_date"),
                    "notes": entry["notes"],
                    "status": InvoiceStatus.NEEDS_REVIEW.value,
                    "parent_invoice_id": invoice_id,
                    "split_index": index,
                }, cur=cur)
                self.db.append_activity({
                    "invoice_id": child["id"],
                    "action": "created_from_split",
                    "performed_by": performed_by,
                    "details": {"parent_invoice_id": invoice_id, "split_index": index},
                }, cur=cur)
                children.append(child)
            self.db.append_activity({
                "invoice_id": invoice_id,
                "action": "split",
                "performed_by": performed_by,
                "details": {
                    "children": [
                        {"invoice_id": c["id"], "job_id": c["job_id"], "amount": c["amount"]} for c in children
                    ],
                },
            }, cur=cur)

        logger.info("Invoice %s split into %s children by %s", invoice_id, len(children), performed_by)
        self.notifier.success(
            f"Invoice split into {len(children)} invoices",
            details={"invoice_id": invoice_id, "children": [c["id"] for c in children]},
        )
        return SplitResult(parent=parent, children=children)

    def unsplit(self, parent_id: str, performed_by: str, expected_version: Optional[int] = None) -> Dict[str, Any]:
        with notify_failures(self.notifier):
            return self._unsplit(parent_id, performed_by, expected_version)

    def _unsplit(self, parent_id, performed_by, expected_version) -> Dict[str, Any]:
        parent = self.db.require_invoice(parent_id)
        if not parent.get("is_split_parent"):
            raise StateViolationError("Invoice is not a split parent", current_status=parent["status"])
        children = self.db.list_invoices(parent_invoice_id=parent_id)
        settled = [c for c in children if c["status"] in _SETTLED]
        if settled:
            numbers = ", ".join(c.get("invoice_number") or c["id"] for c in settled)
            raise StateViolationError(
                f"Cannot unsplit: {numbers} already approved or paid",
                current_status=parent["status"],
            )
        self.locks.require_lock(INVOICE, parent_id, performed_by)
        for child in children:
            self.locks.require_lock(INVOICE, child["id"], performed_by)

        with self.db.transaction() as cur:
            self.db.soft_delete_invoices(cur, [c["id"] for c in children])
            restored = self.db.update_invoice(
                parent_id,
                expected_version if expected_version is not None else parent["version"],
                cur=cur,
                status=InvoiceStatus.NEEDS_REVIEW.value,
                is_split_parent=False,
            )
            self.db.append_activity({
                "invoice_id": parent_id,
                "action": "unsplit",
                "performed_by": performed_by,
                "details": {"removed_children": [c["id"] for c in children]},
            }, cur=cur)

        logger.info("Invoice %s unsplit by %s; %s children removed", parent_id, performed_by, len(children))
        self.notifier.success("Split reversed", details={"invoice_id": parent_id})
        return restored

    def family(self, invoice_id: str) -> Dict[str, Any]:
        invoice = self.db.require_invoice(invoice_id)
        if invoice.get("parent_invoice_id"):
            parent = self.db.require_invoice(invoice["parent_invoice_id"])
        else:
            parent = invoice
        children = self.db.list_invoices(parent_invoice_id=parent["id"]) if parent.get("is_split_parent") else []
        child_total = total(c["amount"] for c in children)
        return {
            "parent": parent,
            "children": children,
            "child_total": child_total,
            "balanced": bool(children) and approx_equal(child_total, parent["amount"]),
        }


def get_invoice_split_service() -> InvoiceSplitService:
    return InvoiceSplitService()
