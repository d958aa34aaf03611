"""
Funding Source Resolver

Lists the purchase orders and change orders an allocation can draw against
and how much of each is still unbilled, from the perspective of one invoice
being edited:

    previously_billed    = allocations linked to the source on OTHER invoices
                           that are approved / in_draw / paid
    remaining            = total - previously_billed
    remaining_after_edit = remaining - what the live edit session allocates

Also suggests change-order links from PO line items and flags allocations
that sit on a change-order-only cost code without a CO link.

Read-only: nothing here writes to the store.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from jobledger.core.database import get_db
from jobledger.core.settings import get_settings
from jobledger.services.invoice_state import COMMITTED_STATUSES
from jobledger.services.money import ZERO, exceeds, quantize, to_decimal, total

logger = logging.getLogger(__name__)

_COMMITTED = {s.value for s in COMMITTED_STATUSES}


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


@dataclass
class FundingSource:
    id: str
    kind: str  # "po" | "co"
    number: Optional[str]
    total: Decimal
    previously_billed: Decimal
    remaining: Decimal
    remaining_after_edit: Decimal
    status: Optional[str] = None
    selectable: bool = True
    vendor_id: Optional[str] = None
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "number": self.number,
            "total": f"{self.total:.2f}",
            "previously_billed": f"{self.previously_billed:.2f}",
            "remaining": f"{self.remaining:.2f}",
            "remaining_after_edit": f"{self.remaining_after_edit:.2f}",
            "status": self.status,
            "selectable": self.selectable,
            "vendor_id": self.vendor_id,
            "title": self.title,
        }


@dataclass
class FundingSources:
    purchase_orders: List[FundingSource] = field(default_factory=list)
    change_orders: List[FundingSource] = field(default_factory=list)

    def get(self, source_id: str) -> Optional[FundingSource]:
        for source in self.purchase_orders + self.change_orders:
            if source.id == source_id:
                return source
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "purchase_orders": [s.to_dict() for s in self.purchase_orders],
            "change_orders": [s.to_dict() for s in self.change_orders],
        }


@dataclass(frozen=True)
class LinkResolution:
    index: int
    suggested_change_order_id: Optional[str] = None
    needs_co_link: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "suggested_change_order_id": self.suggested_change_order_id,
            "needs_co_link": self.needs_co_link,
        }


@dataclass(frozen=True)
class POCapacity:
    po_id: str
    po_number: Optional[str]
    remaining: Decimal
    allocated: Decimal

    @property
    def overage_amount(self) -> Decimal:
        return quantize(max(ZERO, self.allocated - self.remaining))

    @property
    def is_over(self) -> bool:
        return exceeds(self.allocated, self.remaining)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "po_id": self.po_id,
            "po_number": self.po_number,
            "remaining": f"{self.remaining:.2f}",
            "allocated": f"{self.allocated:.2f}",
            "overage_amount": f"{self.overage_amount:.2f}",
            "is_over": self.is_over,
        }


def is_change_order_cost_code(code: Optional[str], suffix: Optional[str] = None) -> bool:
    if not code:
        return False
    suffix = (suffix or get_settings().co_cost_code_suffix).upper()
    return str(code).strip().upper().endswith(suffix)


class FundingSourceResolver:
    def __init__(self, db=None):
        self.db = db or get_db()

    def previously_billed(self, column: str, source_id: str, editing_invoice_id: Optional[str] = None) -> Decimal:
        rows = self.db.list_funding_allocations(column, source_id)
        return total(
            row["amount"]
            for row in rows
            if row.get("invoice_status") in _COMMITTED and row.get("invoice_id") != editing_invoice_id
        )

    def list_funding_sources(
        self,
        job_id: str,
        editing_invoice_id: Optional[str] = None,
        session_allocations: Optional[Iterable[Any]] = None,
    ) -> FundingSources:
        session_allocations = list(session_allocations or [])
        result = FundingSources()

        for po in self.db.list_purchase_orders(job_id):
            in_session = total(
                _get(a, "amount") for a in session_allocations if _get(a, "po_id") == po["id"]
            )
            billed = self.previously_billed("po_id", po["id"], editing_invoice_id)
            remaining = quantize(po["total_amount"] - billed)
            result.purchase_orders.append(FundingSource(
                id=po["id"],
                kind="po",
                number=po.get("po_number"),
                total=po["total_amount"],
                previously_billed=billed,
                remaining=remaining,
                remaining_after_edit=quantize(remaining - in_session),
                status=po.get("status"),
                vendor_id=po.get("vendor_id"),
            ))

        for co in self.db.list_change_orders(job_id):
            in_session = total(
                _get(a, "amount") for a in session_allocations if _get(a, "change_order_id") == co["id"]
            )
            billed = self.previously_billed("change_order_id", co["id"], editing_invoice_id)
            remaining = quantize(co["amount"] - billed)
            result.change_orders.append(FundingSource(
                id=co["id"],
                kind="co",
                number=co.get("change_order_number"),
                total=co["amount"],
                previously_billed=billed,
                remaining=remaining,
                remaining_after_edit=quantize(remaining - in_session),
                status=co.get("status"),
                selectable=co.get("status") != "rejected",
                title=co.get("title"),
            ))
        return result

    def suggest_change_order(self, allocation: Any, job_id: Optional[str]) -> Optional[str]:
        """CO id referenced by a PO line item on the allocation's cost code, if any."""
        cost_code_id = _get(allocation, "cost_code_id")
        if not cost_code_id:
            return None

        search_order: List[List[str]] = []
        po_id = _get(allocation, "po_id")
        if po_id:
            search_order.append([po_id])
        if job_id:
            job_po_ids = [po["id"] for po in self.db.list_purchase_orders(job_id) if po["id"] != po_id]
            if job_po_ids:
                search_order.append(job_po_ids)

        for po_ids in search_order:
            for line in self.db.list_po_line_items(po_ids):
                if line.get("cost_code_id") != cost_code_id or not line.get("change_order_id"):
                    continue
                co = self.db.get_change_order(line["change_order_id"])
                if co and co.get("status") != "rejected":
                    return co["id"]
        return None

    def resolve_links(self, allocations: Iterable[Any], job_id: Optional[str]) -> List[LinkResolution]:
        allocations = list(allocations)
        cost_codes = self.db.get_cost_codes(_get(a, "cost_code_id") for a in allocations)
        resolutions = []
        for index, allocation in enumerate(allocations):
            if _get(allocation, "change_order_id"):
                resolutions.append(LinkResolution(index=index))
                continue
            code = (cost_codes.get(_get(allocation, "cost_code_id")) or {}).get("code")
            resolutions.append(LinkResolution(
                index=index,
                suggested_change_order_id=self.suggest_change_order(allocation, job_id),
                needs_co_link=is_change_order_cost_code(code),
            ))
        return resolutions

    def check_po_capacity(
        self,
        job_id: Optional[str],
        invoice_id: Optional[str],
        allocations: Iterable[Any],
    ) -> List[POCapacity]:
        by_po: Dict[str, Decimal] = {}
        for allocation in allocations:
            po_id = _get(allocation, "po_id")
            if po_id:
                by_po[po_id] = by_po.get(po_id, ZERO) + to_decimal(_get(allocation, "amount"))

        capacities = []
        for po_id, allocated in by_po.items():
            po = self.db.get_purchase_order(po_id)
            if not po:
                logger.warning("Allocation on invoice %s links missing PO %s", invoice_id, po_id)
                continue
            if job_id and po.get("job_id") != job_id:
                logger.warning("PO %s belongs to job %s, not %s", po_id, po.get("job_id"), job_id)
            billed = self.previously_billed("po_id", po_id, invoice_id)
            capacities.append(POCapacity(
                po_id=po_id,
                po_number=po.get("po_number"),
                remaining=quantize(po["total_amount"] - billed),
                allocated=quantize(allocated),
            ))
        return capacities


def get_funding_source_resolver() -> FundingSourceResolver:
    return FundingSourceResolver()
