"""In-memory edit session for one invoice: field values with provenance plus the allocation balancer."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from jobledger.services.allocations import AllocationBalancer, AllocationLine, allocation_cap
from jobledger.services.errors import StateViolationError, ValidationError
from jobledger.services.invoice_state import allocations_editable, coerce_status, fields_editable
from jobledger.services.money import parse_amount

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "vendor_id",
    "job_id",
    "amount",
    "invoice_number",
    "invoice_date",
    "due_date",
    "notes",
    "partial_approval_note",
)


class FieldOrigin(str, Enum):
    STORED = "stored"
    AI = "ai"
    MANUAL = "manual"


@dataclass(frozen=True)
class FieldHint:
    """Opaque AI extraction output for one field."""
    field_name: str
    suggested_value: Any
    confidence: float = 0.0


@dataclass
class FieldValue:
    current_value: Any
    origin: FieldOrigin = FieldOrigin.STORED
    confidence: Optional[float] = None
    overridden: bool = False
    ai_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_value": None if self.current_value is None else str(self.current_value),
            "origin": self.origin.value,
            "confidence": self.confidence,
            "overridden": self.overridden,
        }


def _empty(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def _normalize(name: str, value: Any) -> Any:
    if name == "amount":
        return parse_amount(value)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class EditSession:
    def __init__(self, invoice: Dict[str, Any], allocations: Iterable[Dict[str, Any]], holder: str, unlocked: bool = False):
        self.holder = holder
        self.reload(invoice, allocations, unlocked)

    def reload(self, invoice: Dict[str, Any], allocations: Iterable[Dict[str, Any]], unlocked: bool = False) -> None:
        """Reset to a freshly read record, discarding in-memory edits."""
        self.invoice = dict(invoice)
        self.invoice_id = invoice["id"]
        self.expected_version = int(invoice.get("version") or 1)
        self.unlocked = unlocked
        self.stored_allocations = [dict(a) for a in allocations]
        self.fields: Dict[str, FieldValue] = {
            name: FieldValue(current_value=invoice.get(name)) for name in EDITABLE_FIELDS
        }
        self.balancer = AllocationBalancer(
            cap=allocation_cap(invoice),
            lines=[AllocationLine.from_record(a) for a in self.stored_allocations],
            frozen=not allocations_editable(invoice["status"], unlocked),
        )

    @property
    def status(self) -> str:
        return coerce_status(self.invoice["status"]).value

    @property
    def allocations(self) -> List[AllocationLine]:
        return self.balancer.lines

    @property
    def can_edit_fields(self) -> bool:
        return fields_editable(self.status, self.unlocked)

    def mark_unlocked(self) -> None:
        self.unlocked = True
        self.balancer.frozen = not allocations_editable(self.status, True)

    def value(self, name: str) -> Any:
        return self.fields[name].current_value

    def current_invoice(self) -> Dict[str, Any]:
        merged = dict(self.invoice)
        for name, field_value in self.fields.items():
            merged[name] = field_value.current_value
        return merged

    def set_field(self, name: str, value: Any) -> FieldValue:
        if name not in self.fields:
            raise ValidationError(
                [{"field": name, "message": f"{name} is not an editable field"}],
                message="Unknown field",
            )
        if not self.can_edit_fields:
            raise StateViolationError(
                f"Invoice is {self.status}; unlock it before editing",
                current_status=self.status,
            )
        new_value = _normalize(name, value)
        field_value = self.fields[name]
        if new_value == field_value.current_value:
            return field_value
        if field_value.origin == FieldOrigin.AI:
            field_value.overridden = True
        field_value.current_value = new_value
        field_value.origin = FieldOrigin.MANUAL
        if name == "amount":
            self.balancer.cap = allocation_cap(self.current_invoice())
        return field_value

    def apply_hints(self, hints: Iterable[FieldHint]) -> List[str]:
        """Fill empty fields from AI hints. Returns the names that were applied."""
        applied = []
        for hint in hints:
            field_value = self.fields.get(hint.field_name)
            if field_value is None:
                logger.debug("Ignoring hint for unknown field %s", hint.field_name)
                continue
            if not _empty(field_value.current_value) or _empty(hint.suggested_value):
                continue
            try:
                suggested = _normalize(hint.field_name, hint.suggested_value)
            except ValidationError:
                logger.info("Discarding unparseable hint for %s: %r", hint.field_name, hint.suggested_value)
                continue
            self.fields[hint.field_name] = FieldValue(
                current_value=suggested,
                origin=FieldOrigin.AI,
                confidence=hint.confidence,
                ai_value=suggested,
            )
            applied.append(hint.field_name)
        if "amount" in applied:
            self.balancer.cap = allocation_cap(self.current_invoice())
        return applied

    def replace_allocations(self, records: Iterable[Dict[str, Any]]) -> None:
        """Swap in a full allocation list (e.g. from an API payload)."""
        if self.balancer.frozen:
            raise StateViolationError("Allocations are locked for this invoice", current_status=self.status)
        lines = []
        for record in records:
            line = AllocationLine.from_record({**record, "amount": parse_amount(record.get("amount"))})
            if line.amount < 0:
                raise ValidationError(
                    [{"field": "amount", "message": "Allocation amount cannot be negative"}],
                    message="Invalid allocation amount",
                )
            lines.append(line)
        self.balancer.lines = lines

    def changed_fields(self) -> Dict[str, Any]:
        return {
            name: field_value.current_value
            for name, field_value in self.fields.items()
            if field_value.current_value != self.invoice.get(name)
        }

    def allocations_changed(self) -> bool:
        current = [line.to_record() for line in self.allocations]
        previous = [AllocationLine.from_record(a).to_record() for a in self.stored_allocations]
        return current != previous

    def ai_overrides(self) -> List[Dict[str, Any]]:
        return [
            {
                "field": name,
                "ai_value": str(field_value.ai_value),
                "new_value": None if field_value.current_value is None else str(field_value.current_value),
                "confidence": field_value.confidence,
            }
            for name, field_value in self.fields.items()
            if field_value.overridden
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "status": self.status,
            "expected_version": self.expected_version,
            "holder": self.holder,
            "unlocked": self.unlocked,
            "fields": {name: fv.to_dict() for name, fv in self.fields.items()},
            "allocations": [line.to_dict() for line in self.allocations],
            "allocations_frozen": self.balancer.frozen,
            "summary": self.balancer.summary().to_dict(),
        }
