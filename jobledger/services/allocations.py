"""
Allocation Balancer

In-memory editing of an invoice's allocation lines. The cap is what is still
allocatable on the invoice:

    cap = invoice.amount - max(billed_amount, paid_amount)

Every edit keeps sum(lines) <= cap. When an edit would push the total over,
the first line other than the edited one absorbs the difference (never below
zero); if that is not enough, the edited line itself is clamped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from jobledger.services.errors import StateViolationError, ValidationError
from jobledger.services.money import (
    CENT,
    ZERO,
    approx_equal,
    exceeds,
    format_amount,
    parse_amount,
    quantize,
    to_decimal,
    total,
)

logger = logging.getLogger(__name__)

FULLY_ALLOCATED = "fully_allocated"
UNDER_ALLOCATED = "under_allocated"
OVER_ALLOCATED = "over_allocated"


@dataclass
class AllocationLine:
    cost_code_id: Optional[str] = None
    amount: Decimal = ZERO
    po_id: Optional[str] = None
    change_order_id: Optional[str] = None
    notes: Optional[str] = None
    provenance: str = "manual"
    id: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "AllocationLine":
        return cls(
            cost_code_id=record.get("cost_code_id"),
            amount=to_decimal(record.get("amount")),
            po_id=record.get("po_id"),
            change_order_id=record.get("change_order_id"),
            notes=record.get("notes"),
            provenance=record.get("provenance") or "manual",
            id=record.get("id"),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "cost_code_id": self.cost_code_id,
            "amount": self.amount,
            "po_id": self.po_id,
            "change_order_id": self.change_order_id,
            "notes": self.notes,
            "provenance": self.provenance,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_record()
        data["amount"] = f"{self.amount:.2f}"
        return data


@dataclass(frozen=True)
class RebalanceResult:
    adjusted_index: int
    previous: Decimal
    new: Decimal
    edited_clamped_to: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adjusted_index": self.adjusted_index,
            "previous": f"{self.previous:.2f}",
            "new": f"{self.new:.2f}",
            "edited_clamped_to": None if self.edited_clamped_to is None else f"{self.edited_clamped_to:.2f}",
        }


@dataclass(frozen=True)
class AllocationSummary:
    allocated: Decimal
    cap: Decimal
    remaining: Decimal
    status: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allocated": f"{self.allocated:.2f}",
            "cap": f"{self.cap:.2f}",
            "remaining": f"{self.remaining:.2f}",
            "status": self.status,
            "message": self.message,
        }


def allocation_cap(invoice: Dict[str, Any]) -> Decimal:
    amount = to_decimal(invoice.get("amount"))
    consumed = max(to_decimal(invoice.get("billed_amount")), to_decimal(invoice.get("paid_amount")))
    return max(ZERO, quantize(amount - consumed))


@dataclass
class AllocationBalancer:
    cap: Decimal
    lines: List[AllocationLine] = field(default_factory=list)
    frozen: bool = False

    @property
    def allocated(self) -> Decimal:
        return total(line.amount for line in self.lines)

    def _ensure_editable(self) -> None:
        if self.frozen:
            raise StateViolationError("Allocations are locked for this invoice")

    def _line(self, index: int) -> AllocationLine:
        if index < 0 or index >= len(self.lines):
            raise ValidationError(
                [{"field": "allocations", "message": f"No allocation at position {index + 1}"}],
                message="Unknown allocation line",
            )
        return self.lines[index]

    def add(
        self,
        cost_code_id: Optional[str] = None,
        po_id: Optional[str] = None,
        change_order_id: Optional[str] = None,
        notes: Optional[str] = None,
        provenance: str = "manual",
    ) -> int:
        self._ensure_editable()
        self.lines.append(AllocationLine(
            cost_code_id=cost_code_id,
            po_id=po_id,
            change_order_id=change_order_id,
            notes=notes,
            provenance=provenance,
        ))
        return len(self.lines) - 1

    def remove(self, index: int) -> AllocationLine:
        self._ensure_editable()
        self._line(index)
        return self.lines.pop(index)

    def update_line(self, index: int, **fields: Any) -> AllocationLine:
        """Change a line's links, cost code or notes. Amounts go through set_amount."""
        self._ensure_editable()
        line = self._line(index)
        for name in ("cost_code_id", "po_id", "change_order_id", "notes"):
            if name in fields:
                setattr(line, name, fields[name] or None)
        return line

    def fill_remaining(self, index: int) -> Decimal:
        self._ensure_editable()
        line = self._line(index)
        others = total(l.amount for i, l in enumerate(self.lines) if i != index)
        line.amount = max(ZERO, quantize(self.cap - others))
        return line.amount

    def split_evenly(self) -> List[Decimal]:
        self._ensure_editable()
        count = len(self.lines)
        if count < 2:
            raise ValidationError(
                [{"requirement": "allocations", "message": "Split evenly needs at least two allocation lines"}],
                message="Not enough allocation lines to split",
            )
        cents = int(self.cap / CENT)
        share, remainder = divmod(cents, count)
        for line in self.lines:
            line.amount = quantize(Decimal(share) * CENT)
        self.lines[0].amount = quantize(Decimal(share + remainder) * CENT)
        return [line.amount for line in self.lines]

    def set_amount(self, index: int, value: Any) -> Optional[RebalanceResult]:
        self._ensure_editable()
        line = self._line(index)
        amount = parse_amount(value)
        if amount < 0:
            raise ValidationError(
                [{"field": "amount", "message": "Allocation amount cannot be negative"}],
                message="Invalid allocation amount",
            )
        line.amount = amount
        return self.rebalance_to_cap(index)

    def percentage_of(self, index: int, pct: Any) -> Optional[RebalanceResult]:
        self._ensure_editable()
        line = self._line(index)
        percent = parse_amount(pct)
        if percent < 0 or percent > 100:
            raise ValidationError(
                [{"field": "percentage", "message": "Percentage must be between 0 and 100"}],
                message="Invalid percentage",
            )
        line.amount = quantize(self.cap * percent / Decimal(100))
        return self.rebalance_to_cap(index)

    def rebalance_to_cap(self, edited_index: int) -> Optional[RebalanceResult]:
        over = self.allocated - self.cap
        if not exceeds(over, ZERO):
            return None

        result: Optional[RebalanceResult] = None
        balancing = next((i for i in range(len(self.lines)) if i != edited_index), None)
        if balancing is not None:
            line = self.lines[balancing]
            previous = line.amount
            line.amount = max(ZERO, quantize(previous - over))
            over -= previous - line.amount
            if line.amount != previous:
                result = RebalanceResult(balancing, previous, line.amount)

        if over > 0:
            edited = self.lines[edited_index]
            previous = edited.amount
            edited.amount = max(ZERO, quantize(previous - over))
            if result is None:
                result = RebalanceResult(edited_index, previous, edited.amount)
            else:
                result = RebalanceResult(result.adjusted_index, result.previous, result.new, edited.amount)

        if result is not None:
            logger.debug(
                "Rebalanced allocation %s: %s -> %s",
                result.adjusted_index, result.previous, result.new,
            )
        return result

    def summary(self) -> AllocationSummary:
        allocated = self.allocated
        remaining = quantize(self.cap - allocated)
        if approx_equal(allocated, self.cap):
            return AllocationSummary(allocated, self.cap, ZERO, FULLY_ALLOCATED, "Fully allocated.")
        if allocated < self.cap:
            return AllocationSummary(
                allocated, self.cap, remaining, UNDER_ALLOCATED, f"{format_amount(remaining)} unallocated."
            )
        return AllocationSummary(
            allocated, self.cap, remaining, OVER_ALLOCATED, f"Over-allocated by {format_amount(-remaining)}."
        )

    def to_records(self) -> List[Dict[str, Any]]:
        return [line.to_record() for line in self.lines]
